"""Events emitted by mill entry points. Published only when an invocation commits."""

from __future__ import annotations

from dataclasses import dataclass

from solders.pubkey import Pubkey  # type: ignore[import-untyped]


@dataclass(frozen=True)
class ConfigCreatedEvent:
    config: Pubkey
    authority: Pubkey
    protocol_fee_share_bps: int
    referral_fee_share_bps: int


@dataclass(frozen=True)
class ConfigOwnershipTransferredEvent:
    config: Pubkey
    previous_authority: Pubkey
    new_authority: Pubkey


@dataclass(frozen=True)
class MarketCreatedEvent:
    market: Pubkey
    base_mint: Pubkey
    creator: Pubkey
    migration_threshold_lamports: int


@dataclass(frozen=True)
class MarketEligibleEvent:
    market: Pubkey
    total_buyback_lamports: int
    threshold_lamports: int


@dataclass(frozen=True)
class MigrationEvent:
    """forced=True marks the admin escape hatch, as opposed to a threshold migration."""

    market: Pubkey
    triggered_by: Pubkey
    total_buyback_lamports: int
    forced: bool
    creator_payout_lamports: int
    forwarded_instructions: int


@dataclass(frozen=True)
class BuybackEvent:
    market: Pubkey
    lamports_spent: int
    reflected_lamports: int
    swap_forwarded: bool


@dataclass(frozen=True)
class ReflectionSettledEvent:
    market: Pubkey
    added_lamports: int


@dataclass(frozen=True)
class ReflectionClaimEvent:
    market: Pubkey
    owner: Pubkey
    lamports: int


@dataclass(frozen=True)
class ReferralBoundEvent:
    config: Pubkey
    user: Pubkey
    referrer: Pubkey


@dataclass(frozen=True)
class ReferralFeeClaimEvent:
    referrer: Pubkey
    lamports: int


@dataclass(frozen=True)
class SwapEvent:
    market: Pubkey
    buyer: Pubkey
    quote_in: int
    base_out: int
    protocol_fee: int
    referral_fee: int
    creator_fee: int
