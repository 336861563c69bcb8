"""Reflection pool: distribution policy, manual settlement and holder claims.

How a buyback is split across holders is a policy decision, so it is
pluggable. The program only enforces the ledger bounds: a policy can never
credit more than was bought back, and never assign more than it pools.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    InvalidAmountError,
    InvalidConfigAccountError,
    InvalidMarketStateError,
    InvalidPdaError,
    NothingToClaimError,
    ReflectionOverCreditError,
    UnauthorizedError,
)
from market_mill.program.events import ReflectionClaimEvent, ReflectionSettledEvent
from market_mill.program.ledger import SYSTEM_PROGRAM_ID, Invocation
from market_mill.program.state import (
    BPS_DENOMINATOR,
    BuybackState,
    Market,
    MillConfig,
    ReflectionState,
    checked_add,
)

if TYPE_CHECKING:
    from market_mill.program.program import MarketMillProgram


@dataclass(frozen=True)
class ReflectionAllocation:
    pool_amount: int
    credits: dict[Pubkey, int] = field(default_factory=dict)


class ReflectionPolicy(Protocol):
    def allocate(
        self, market: Market, lamports: int, excluded: frozenset[Pubkey] = frozenset()
    ) -> ReflectionAllocation: ...


class ProportionalReflectionPolicy:
    """Split share_bps of each buyback across holders by token balance.

    Shares are floored; the rounding dust stays in the pool unassigned.
    Excluded holders carry no weight. Nothing is pooled while no eligible
    holder remains.
    """

    def __init__(self, share_bps: int = BPS_DENOMINATOR) -> None:
        if not 0 <= share_bps <= BPS_DENOMINATOR:
            raise ValueError(f"share_bps must be within 0..{BPS_DENOMINATOR}, got {share_bps}")
        self._share_bps = share_bps

    def allocate(
        self, market: Market, lamports: int, excluded: frozenset[Pubkey] = frozenset()
    ) -> ReflectionAllocation:
        weights = {
            h: bal for h, bal in market.holder_balances.items() if bal > 0 and h not in excluded
        }
        total_weight = sum(weights.values())
        pool = lamports * self._share_bps // BPS_DENOMINATOR
        if total_weight == 0 or pool == 0:
            return ReflectionAllocation(pool_amount=0)
        credits = {h: pool * w // total_weight for h, w in weights.items()}
        return ReflectionAllocation(pool_amount=pool, credits=credits)


def apply_allocation(
    inv: Invocation,
    *,
    source: Pubkey,
    reflection_account: Pubkey,
    reflection: ReflectionState,
    buyback: BuybackState,
    allocation: ReflectionAllocation,
    funded_amount: int,
) -> None:
    """Move allocation.pool_amount from source into the reflection vault and credit holders."""
    if allocation.pool_amount > funded_amount:
        raise ReflectionOverCreditError(
            f"Policy pooled {allocation.pool_amount} from only {funded_amount} lamports"
        )
    if sum(allocation.credits.values()) > allocation.pool_amount:
        raise ReflectionOverCreditError("Policy assigned more than it pooled")
    reflected = checked_add(buyback.total_reflected_lamports, allocation.pool_amount)
    if reflected > buyback.total_buyback_lamports:
        raise ReflectionOverCreditError(
            f"Reflected {reflected} would exceed bought back {buyback.total_buyback_lamports}"
        )

    inv.transfer(source, reflection_account, allocation.pool_amount)
    reflection.credit(allocation.credits, allocation.pool_amount)
    buyback.total_reflected_lamports = reflected


# ─── settle_reflection ───────────────────────────────────────────────


@dataclass(frozen=True)
class SettleReflectionAccounts:
    market: Pubkey
    config: Pubkey
    reflection_state: Pubkey
    buyback_state: Pubkey
    authority: Pubkey
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def settle_reflection(
    program: MarketMillProgram,
    accounts: SettleReflectionAccounts,
    *,
    added_lamports: int,
    signers: Iterable[Pubkey] = (),
) -> ReflectionSettledEvent:
    """Credit lamports the authority funds after a swap-based buyback.

    Still bounded by the buyback total, so settlements can never reflect more
    than the market actually spent.
    """
    if added_lamports <= 0:
        raise InvalidAmountError(f"Settlement amount must be positive, got {added_lamports}")

    writable = {accounts.reflection_state, accounts.buyback_state, accounts.authority}
    readonly = {accounts.market, accounts.config, accounts.system_program}
    with program.ledger.invoke(writable=writable, readonly=readonly, signers=signers) as inv:
        inv.require_signer(accounts.authority)
        config = inv.state(accounts.config, MillConfig)
        if accounts.authority != config.authority:
            raise UnauthorizedError("Only the config authority may settle reflections")
        market = inv.state(accounts.market, Market)
        if market.config != accounts.config:
            raise InvalidConfigAccountError(f"Market {accounts.market} does not use config {accounts.config}")
        reflection = inv.state_mut(accounts.reflection_state, ReflectionState)
        buyback = inv.state_mut(accounts.buyback_state, BuybackState)
        if reflection.market != accounts.market or buyback.market != accounts.market:
            raise InvalidPdaError("Reflection/buyback state does not belong to this market")

        allocation = program.reflection_policy.allocate(
            market, added_lamports, excluded=frozenset(config.reflection_exclusions)
        )
        if allocation.pool_amount == 0:
            raise InvalidMarketStateError(
                f"Market {accounts.market} has no eligible holders to reflect {added_lamports} lamports to"
            )
        apply_allocation(
            inv,
            source=accounts.authority,
            reflection_account=accounts.reflection_state,
            reflection=reflection,
            buyback=buyback,
            allocation=allocation,
            funded_amount=added_lamports,
        )
        event = ReflectionSettledEvent(market=accounts.market, added_lamports=allocation.pool_amount)
        inv.emit(event)

    logger.info(f"[REFLECT] Settled {event.added_lamports} lamports into {str(accounts.market)[:12]}")
    return event


# ─── claim_reflection ────────────────────────────────────────────────


@dataclass(frozen=True)
class ClaimReflectionAccounts:
    market: Pubkey
    config: Pubkey
    reflection_state: Pubkey
    owner: Pubkey


def claim_reflection(
    program: MarketMillProgram,
    accounts: ClaimReflectionAccounts,
    *,
    signers: Iterable[Pubkey] = (),
) -> ReflectionClaimEvent:
    writable = {accounts.reflection_state, accounts.owner}
    with program.ledger.invoke(
        writable=writable, readonly={accounts.market, accounts.config}, signers=signers
    ) as inv:
        inv.require_signer(accounts.owner)
        market = inv.state(accounts.market, Market)
        if market.config != accounts.config:
            raise InvalidConfigAccountError(f"Market {accounts.market} does not use config {accounts.config}")
        config = inv.state(accounts.config, MillConfig)
        if accounts.owner in config.reflection_exclusions:
            raise UnauthorizedError(f"{accounts.owner} is excluded from reflections")
        reflection = inv.state_mut(accounts.reflection_state, ReflectionState)
        if reflection.market != accounts.market:
            raise InvalidPdaError("Reflection state does not belong to this market")

        if reflection.claimable.get(accounts.owner, 0) == 0:
            raise NothingToClaimError(f"{accounts.owner} has no reflection to claim")
        amount = reflection.take(accounts.owner)
        inv.transfer(accounts.reflection_state, accounts.owner, amount)

        event = ReflectionClaimEvent(market=accounts.market, owner=accounts.owner, lamports=amount)
        inv.emit(event)

    logger.info(f"[REFLECT] {str(accounts.owner)[:12]} claimed {amount} lamports")
    return event
