"""Submit perform_migration for a market using externally built liquidity calls.

The instruction file holds the JSON instruction(s) an AMM SDK or aggregator
produced, either a single instruction object (create liquidity) or
{"create": {...}, "burn": {...}}.

Usage:
    python scripts/perform_migration.py --base-mint <MINT> --creator <CREATOR> lp_ix.json
    python scripts/perform_migration.py --base-mint <MINT> --creator <CREATOR> --force lp_ix.json
    python scripts/perform_migration.py ... --dry-run lp_ix.json
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from loguru import logger  # noqa: E402
from solders.keypair import Keypair  # type: ignore[import-untyped]  # noqa: E402
from solders.pubkey import Pubkey  # type: ignore[import-untyped]  # noqa: E402

from config.settings import settings  # noqa: E402
from market_mill.client.accounts import remaining_accounts_to_json  # noqa: E402
from market_mill.client.marshaller import instruction_to_forward_payload  # noqa: E402
from market_mill.client.mill_client import MarketMillClient  # noqa: E402
from market_mill.errors import MarketMillError  # noqa: E402
from market_mill.program.migration import PerformMigrationAccounts  # noqa: E402
from market_mill.program.pda import find_buyback_state_address, find_market_address  # noqa: E402
from market_mill.utils.logger import setup_logger  # noqa: E402


def load_payloads(path: Path):
    raw = json.loads(path.read_text())
    if "create" in raw:
        create = instruction_to_forward_payload(raw["create"])
        burn = instruction_to_forward_payload(raw["burn"]) if raw.get("burn") else None
    else:
        create = instruction_to_forward_payload(raw)
        burn = None
    return create, burn


async def main() -> None:
    parser = argparse.ArgumentParser(description="Forward liquidity calls through perform_migration")
    parser.add_argument("instruction_file", type=Path, help="JSON instruction(s) to forward")
    parser.add_argument("--base-mint", required=True, help="Base token mint of the market")
    parser.add_argument("--creator", required=True, help="Market creator (receives the payout)")
    parser.add_argument("--force", action="store_true", help="Forced migration (config authority only)")
    parser.add_argument("--dry-run", action="store_true", help="Print the instruction, do not send")
    args = parser.parse_args()

    setup_logger(
        json_logs=settings.json_logs, level=settings.log_level, log_dir=settings.log_dir
    )

    if not settings.program_id or not settings.config_account:
        logger.error("PROGRAM_ID and CONFIG_ACCOUNT must be set")
        sys.exit(1)

    try:
        create, burn = load_payloads(args.instruction_file)
    except MarketMillError as e:
        logger.error(f"[MIGRATE] Cannot marshal {args.instruction_file}: {e.message}")
        sys.exit(1)

    program_id = Pubkey.from_string(settings.program_id)
    market, _ = find_market_address(Pubkey.from_string(args.base_mint), program_id)
    buyback_state, _ = find_buyback_state_address(market, program_id)

    if args.dry_run:
        print(json.dumps({
            "market": str(market),
            "buybackState": str(buyback_state),
            "externalProgram": str(create.program_id),
            "createDataLen": len(create.data),
            "burnDataLen": len(burn.data) if burn else None,
            "remainingAccounts": remaining_accounts_to_json(create.accounts),
        }, indent=2))
        return

    if not settings.wallet_private_key:
        logger.error("WALLET_PRIVATE_KEY is not set")
        sys.exit(1)
    keypair = Keypair.from_base58_string(settings.wallet_private_key)

    accounts = PerformMigrationAccounts(
        market=market,
        config=Pubkey.from_string(settings.config_account),
        buyback_state=buyback_state,
        creator=Pubkey.from_string(args.creator),
        authority=keypair.pubkey(),
        external_program=create.program_id,
    )

    client = MarketMillClient(
        rpc_url=settings.solana_rpc_url, keypair=keypair, program_id=program_id
    )
    try:
        result = await client.perform_migration(accounts, create, burn, force=args.force)
    finally:
        await client.close()

    if result.success:
        print(f"Migrated {market}: {result.tx_hash}")
    else:
        print(f"Migration failed: {result.error}")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
