"""MarketMillProgram: entry points and raw instruction dispatch."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Sequence
from typing import Any

from loguru import logger
from solders.instruction import AccountMeta, Instruction  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.codec import decode_instruction_data
from market_mill.errors import InvalidInstructionFormatError, ProgramMismatchError
from market_mill.program import admin, buyback, migration, purchase, reflection, referral
from market_mill.program.ledger import Ledger
from market_mill.program.purchase import FlatPriceCurve, PriceCurve
from market_mill.program.reflection import ProportionalReflectionPolicy, ReflectionPolicy
from market_mill.program.runtime import Runtime

# instruction name -> (accounts type, handler, handler takes remaining_accounts)
_HANDLERS: dict[str, tuple[type, Callable[..., Any], bool]] = {
    "create_config": (admin.CreateConfigAccounts, admin.create_config, False),
    "update_cpi_whitelist": (admin.ConfigAuthorityAccounts, admin.update_cpi_whitelist, False),
    "update_reflection_exclusion": (
        admin.ConfigAuthorityAccounts,
        admin.update_reflection_exclusion,
        False,
    ),
    "update_fee_shares": (admin.ConfigAuthorityAccounts, admin.update_fee_shares, False),
    "update_protocol_fee_recipient": (
        admin.ConfigAuthorityAccounts,
        admin.update_protocol_fee_recipient,
        False,
    ),
    "transfer_config_ownership": (
        admin.ConfigAuthorityAccounts,
        admin.transfer_config_ownership,
        False,
    ),
    "accept_config_ownership": (
        admin.AcceptConfigOwnershipAccounts,
        admin.accept_config_ownership,
        False,
    ),
    "create_market": (admin.CreateMarketAccounts, admin.create_market, False),
    "perform_migration": (migration.PerformMigrationAccounts, migration.perform_migration, True),
    "perform_buyback": (buyback.PerformBuybackAccounts, buyback.perform_buyback, True),
    "settle_reflection": (reflection.SettleReflectionAccounts, reflection.settle_reflection, False),
    "claim_reflection": (reflection.ClaimReflectionAccounts, reflection.claim_reflection, False),
    "create_referral_account": (
        referral.CreateReferralAccountAccounts,
        referral.create_referral_account,
        False,
    ),
    "claim_referral_fees": (referral.ClaimReferralFeesAccounts, referral.claim_referral_fees, False),
    "buy": (purchase.BuyAccounts, purchase.buy, False),
}


class MarketMillProgram:
    """The mill program bound to a runtime (and through it, a ledger).

    Entry points can be called directly with typed accounts, or with a raw
    solders Instruction through process_instruction().
    """

    def __init__(
        self,
        program_id: Pubkey,
        runtime: Runtime,
        *,
        reflection_policy: ReflectionPolicy | None = None,
        price_curve: PriceCurve | None = None,
    ) -> None:
        self.program_id = program_id
        self.runtime = runtime
        self.reflection_policy: ReflectionPolicy = reflection_policy or ProportionalReflectionPolicy()
        self.price_curve: PriceCurve = price_curve or FlatPriceCurve()
        runtime.ledger.add_program(program_id)

    @property
    def ledger(self) -> Ledger:
        return self.runtime.ledger

    # ── typed entry points ──

    def create_config(self, accounts: admin.CreateConfigAccounts, **kwargs: Any) -> Any:
        return admin.create_config(self, accounts, **kwargs)

    def update_cpi_whitelist(self, accounts: admin.ConfigAuthorityAccounts, **kwargs: Any) -> None:
        admin.update_cpi_whitelist(self, accounts, **kwargs)

    def update_reflection_exclusion(
        self, accounts: admin.ConfigAuthorityAccounts, **kwargs: Any
    ) -> None:
        admin.update_reflection_exclusion(self, accounts, **kwargs)

    def update_fee_shares(self, accounts: admin.ConfigAuthorityAccounts, **kwargs: Any) -> None:
        admin.update_fee_shares(self, accounts, **kwargs)

    def update_protocol_fee_recipient(
        self, accounts: admin.ConfigAuthorityAccounts, **kwargs: Any
    ) -> None:
        admin.update_protocol_fee_recipient(self, accounts, **kwargs)

    def transfer_config_ownership(
        self, accounts: admin.ConfigAuthorityAccounts, **kwargs: Any
    ) -> None:
        admin.transfer_config_ownership(self, accounts, **kwargs)

    def accept_config_ownership(
        self, accounts: admin.AcceptConfigOwnershipAccounts, **kwargs: Any
    ) -> Any:
        return admin.accept_config_ownership(self, accounts, **kwargs)

    def create_market(self, accounts: admin.CreateMarketAccounts, **kwargs: Any) -> Any:
        return admin.create_market(self, accounts, **kwargs)

    def perform_migration(
        self, accounts: migration.PerformMigrationAccounts, **kwargs: Any
    ) -> Any:
        return migration.perform_migration(self, accounts, **kwargs)

    def perform_buyback(self, accounts: buyback.PerformBuybackAccounts, **kwargs: Any) -> Any:
        return buyback.perform_buyback(self, accounts, **kwargs)

    def settle_reflection(
        self, accounts: reflection.SettleReflectionAccounts, **kwargs: Any
    ) -> Any:
        return reflection.settle_reflection(self, accounts, **kwargs)

    def claim_reflection(self, accounts: reflection.ClaimReflectionAccounts, **kwargs: Any) -> Any:
        return reflection.claim_reflection(self, accounts, **kwargs)

    def create_referral_account(
        self, accounts: referral.CreateReferralAccountAccounts, **kwargs: Any
    ) -> Any:
        return referral.create_referral_account(self, accounts, **kwargs)

    def claim_referral_fees(
        self, accounts: referral.ClaimReferralFeesAccounts, **kwargs: Any
    ) -> Any:
        return referral.claim_referral_fees(self, accounts, **kwargs)

    def buy(self, accounts: purchase.BuyAccounts, **kwargs: Any) -> Any:
        return purchase.buy(self, accounts, **kwargs)

    # ── raw instructions ──

    def process_instruction(self, instruction: Instruction, signers: Iterable[Pubkey] = ()) -> Any:
        """Decode a wire instruction and run the matching entry point.

        Accounts beyond the fixed list become remaining accounts, passed
        through in order for entry points that forward.
        """
        if instruction.program_id != self.program_id:
            raise ProgramMismatchError(
                f"Instruction targets {instruction.program_id}, not {self.program_id}"
            )
        spec, args = decode_instruction_data(bytes(instruction.data))
        metas: Sequence[AccountMeta] = instruction.accounts
        if len(metas) < len(spec.accounts):
            raise InvalidInstructionFormatError(
                f"{spec.name} expects {len(spec.accounts)} accounts, got {len(metas)}"
            )

        named: dict[str, Pubkey | None] = {}
        for slot, meta in zip(spec.accounts, metas):
            absent = slot.optional and meta.pubkey == self.program_id
            named[slot.name] = None if absent else meta.pubkey
        remaining = list(metas[len(spec.accounts) :])

        accounts_type, handler, takes_remaining = _HANDLERS[spec.name]
        kwargs: dict[str, Any] = dict(args)
        if takes_remaining:
            kwargs["remaining_accounts"] = remaining
        elif remaining:
            raise InvalidInstructionFormatError(
                f"{spec.name} does not accept {len(remaining)} extra accounts"
            )

        signer_set = set(signers)
        logger.debug(f"[PROGRAM] {spec.name} accounts={len(metas)} signers={len(signer_set)}")
        return handler(self, accounts_type(**named), signers=signer_set, **kwargs)
