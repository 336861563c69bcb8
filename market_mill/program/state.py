"""Persisted account state owned by the market mill program."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import MathOverflowError

U64_MAX = 2**64 - 1
BPS_DENOMINATOR = 10_000

MARKET_PDA_SEED = b"market"
BUYBACK_PDA_SEED = b"buyback"
REFLECTION_PDA_SEED = b"reflection"
REFERRAL_PDA_SEED = b"referral"


def checked_add(a: int, b: int) -> int:
    """u64 addition that fails instead of wrapping."""
    total = a + b
    if total > U64_MAX:
        raise MathOverflowError(f"u64 overflow: {a} + {b}")
    return total


def checked_sub(a: int, b: int) -> int:
    if b > a:
        raise MathOverflowError(f"u64 underflow: {a} - {b}")
    return a - b


class MarketStatus(IntEnum):
    ACTIVE = 0
    ELIGIBLE = 1
    MIGRATED = 2


@dataclass
class MigrationRecord:
    eligible: bool = False
    migrated: bool = False
    forced: bool = False


@dataclass
class MillConfig:
    authority: Pubkey
    protocol_fee_recipient: Pubkey
    protocol_fee_share_bps: int = 0
    referral_fee_share_bps: int = 0
    creator_fee_share_bps: int = 0
    migration_threshold_lamports: int = 0
    creator_bonus_lamports: int = 0
    # Program ids the mill may forward instructions to
    cpi_whitelist: list[Pubkey] = field(default_factory=list)
    max_forwarded_accounts: int = 0
    pending_authority: Pubkey | None = None
    # Holders that never receive reflections (pools, vaults, the team)
    reflection_exclusions: list[Pubkey] = field(default_factory=list)

    def is_whitelisted(self, program_id: Pubkey) -> bool:
        return program_id in self.cpi_whitelist


@dataclass
class Market:
    """A bonding-curve market. The account's lamports are the market treasury."""

    config: Pubkey
    base_mint: Pubkey
    creator: Pubkey
    bump: int
    status: MarketStatus = MarketStatus.ACTIVE
    migration: MigrationRecord = field(default_factory=MigrationRecord)
    # 0 means "use the config-wide threshold"
    migration_threshold_lamports: int = 0
    total_supply: int = 0
    holder_balances: dict[Pubkey, int] = field(default_factory=dict)
    pending_creator_fees: int = 0

    @property
    def is_migrated(self) -> bool:
        return self.migration.migrated

    def threshold(self, config: MillConfig) -> int:
        if self.migration_threshold_lamports > 0:
            return self.migration_threshold_lamports
        return config.migration_threshold_lamports

    def refresh_eligibility(self, accumulated_lamports: int, config: MillConfig) -> bool:
        """Promote ACTIVE -> ELIGIBLE once buybacks reach the threshold (inclusive).

        Returns True if the market is eligible after the check.
        """
        if self.status == MarketStatus.ACTIVE and accumulated_lamports >= self.threshold(config):
            self.status = MarketStatus.ELIGIBLE
            self.migration.eligible = True
        return self.status == MarketStatus.ELIGIBLE

    def mark_migrated(self, *, forced: bool) -> None:
        self.status = MarketStatus.MIGRATED
        self.migration.migrated = True
        self.migration.forced = forced

    def mint_to(self, holder: Pubkey, amount: int) -> None:
        self.holder_balances[holder] = checked_add(self.holder_balances.get(holder, 0), amount)
        self.total_supply = checked_add(self.total_supply, amount)


@dataclass
class BuybackState:
    market: Pubkey
    bump: int
    total_buyback_lamports: int = 0
    total_reflected_lamports: int = 0


@dataclass
class ReflectionState:
    """Claimable reflection balances keyed by holder.

    sum(claimable) never exceeds total_pool - total_claimed.
    """

    market: Pubkey
    bump: int
    total_pool: int = 0
    total_credited: int = 0
    total_claimed: int = 0
    claimable: dict[Pubkey, int] = field(default_factory=dict)

    def credit(self, credits: dict[Pubkey, int], pool_amount: int) -> None:
        assigned = sum(credits.values())
        if assigned > pool_amount:
            raise MathOverflowError(f"assigned {assigned} exceeds pool credit {pool_amount}")
        self.total_pool = checked_add(self.total_pool, pool_amount)
        self.total_credited = checked_add(self.total_credited, pool_amount)
        for holder, amount in credits.items():
            if amount > 0:
                self.claimable[holder] = checked_add(self.claimable.get(holder, 0), amount)

    def take(self, holder: Pubkey) -> int:
        """Zero the holder's claimable balance and return what it was."""
        amount = self.claimable.pop(holder, 0)
        self.total_claimed = checked_add(self.total_claimed, amount)
        return amount

    @property
    def outstanding(self) -> int:
        return sum(self.claimable.values())


@dataclass
class ReferralAccount:
    config: Pubkey
    referrer: Pubkey
    owner: Pubkey
    bump: int
    pending_lamports: int = 0
