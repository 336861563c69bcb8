"""Migration state machine: ACTIVE -> ELIGIBLE -> MIGRATED (terminal).

Normal path requires ELIGIBLE (buybacks >= threshold). The forced path skips
eligibility but only for the config authority, and is recorded as forced on
the market and in the MigrationEvent.

Ordering inside perform_migration:
  1. AlreadyMigrated check (before anything else, regardless of force)
  2. authority / eligibility checks
  3. forwarding guards (whitelist, account cap, primary payload present)
  4. forward create-liquidity, then burn-liquidity if supplied
  5. creator payout and the MIGRATED transition
Steps 4-5 run in one ledger invocation, so a failing burn undoes the
created liquidity as well.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger
from solders.instruction import AccountMeta  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    AlreadyMigratedError,
    InvalidConfigAccountError,
    InvalidPdaError,
    MissingLiquidityInstructionError,
    NotEligibleError,
    UnauthorizedError,
)
from market_mill.program.events import MigrationEvent
from market_mill.program.forwarder import check_forwarding_allowed, forward
from market_mill.program.ledger import SYSTEM_PROGRAM_ID, Invocation
from market_mill.program.pda import assert_pda, market_seeds, market_signer_seeds
from market_mill.program.state import BuybackState, Market, MillConfig, checked_add, checked_sub

if TYPE_CHECKING:
    from market_mill.program.program import MarketMillProgram


@dataclass(frozen=True)
class PerformMigrationAccounts:
    market: Pubkey
    config: Pubkey
    buyback_state: Pubkey
    creator: Pubkey
    authority: Pubkey
    external_program: Pubkey
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def split_remaining(
    remaining_accounts: Sequence[AccountMeta],
) -> tuple[set[Pubkey], set[Pubkey]]:
    """Writable and readonly keys declared by the forwarded account list."""
    writable = {m.pubkey for m in remaining_accounts if m.is_writable}
    readonly = {m.pubkey for m in remaining_accounts if not m.is_writable}
    return writable, readonly


def perform_migration(
    program: MarketMillProgram,
    accounts: PerformMigrationAccounts,
    *,
    force: bool,
    create_lp_ix: bytes | None,
    burn_lp_ix: bytes | None = None,
    remaining_accounts: Sequence[AccountMeta] = (),
    signers: Iterable[Pubkey] = (),
) -> MigrationEvent:
    extra_writable, extra_readonly = split_remaining(remaining_accounts)
    writable = {accounts.market, accounts.buyback_state, accounts.creator} | extra_writable
    readonly = {
        accounts.config,
        accounts.authority,
        accounts.external_program,
        accounts.system_program,
    } | extra_readonly

    with program.ledger.invoke(writable=writable, readonly=readonly, signers=signers) as inv:
        market = inv.state_mut(accounts.market, Market)
        if market.is_migrated:
            raise AlreadyMigratedError(f"Market {accounts.market} is already migrated")
        inv.require_signer(accounts.authority)

        if market.config != accounts.config:
            raise InvalidConfigAccountError(f"Market {accounts.market} does not use config {accounts.config}")
        config = inv.state(accounts.config, MillConfig)
        assert_pda(market_seeds(market.base_mint), program.program_id, accounts.market)

        buyback = inv.state(accounts.buyback_state, BuybackState)
        if buyback.market != accounts.market:
            raise InvalidPdaError(f"Buyback state {accounts.buyback_state} belongs to {buyback.market}")
        if accounts.creator != market.creator:
            raise UnauthorizedError(f"{accounts.creator} is not the creator of {accounts.market}")

        if force:
            if accounts.authority != config.authority:
                raise UnauthorizedError(
                    f"Forced migration requires config authority, got {accounts.authority}"
                )
        elif not market.refresh_eligibility(buyback.total_buyback_lamports, config):
            raise NotEligibleError(
                f"Buybacks {buyback.total_buyback_lamports} < threshold {market.threshold(config)}"
            )

        if not create_lp_ix:
            raise MissingLiquidityInstructionError("create-liquidity instruction is required")
        check_forwarding_allowed(config, accounts.external_program, remaining_accounts)

        seeds = market_signer_seeds(market.base_mint, market.bump)
        forwarded = 0
        for payload in (create_lp_ix, burn_lp_ix):
            if not payload:
                continue
            forward(
                inv,
                program.runtime,
                caller_program_id=program.program_id,
                external_program=accounts.external_program,
                data=payload,
                remaining_accounts=remaining_accounts,
                signer_seeds=seeds,
            )
            forwarded += 1

        payout = _pay_creator(inv, market, config, accounts)
        market.mark_migrated(forced=force)

        event = MigrationEvent(
            market=accounts.market,
            triggered_by=accounts.authority,
            total_buyback_lamports=buyback.total_buyback_lamports,
            forced=force,
            creator_payout_lamports=payout,
            forwarded_instructions=forwarded,
        )
        inv.emit(event)

    logger.info(
        f"[MIGRATE] {str(accounts.market)[:12]} migrated "
        f"({'FORCED' if force else 'threshold'}) buybacks={event.total_buyback_lamports} "
        f"payout={payout} forwarded={forwarded}"
    )
    return event


def _pay_creator(
    inv: Invocation, market: Market, config: MillConfig, accounts: PerformMigrationAccounts
) -> int:
    """Pending creator fees plus the fixed bonus, capped at what the treasury holds."""
    owed = checked_add(market.pending_creator_fees, config.creator_bonus_lamports)
    payout = min(owed, inv.balance(accounts.market))
    if payout == 0:
        return 0
    inv.transfer(accounts.market, accounts.creator, payout)
    market.pending_creator_fees = checked_sub(
        market.pending_creator_fees, min(payout, market.pending_creator_fees)
    )
    return payout
