"""Buyback entry point: spends treasury lamports and feeds the reflection pool.

Two modes:
  - swap_ix supplied: the swap is forwarded to the external DEX under the
    market authority; the DEX moves the funds itself. The treasury must drop by
    at least the buyback amount before the total is recorded; reflection is
    credited later via settle_reflection.
  - no swap_ix: the treasury is debited directly, the reflection policy's
    pool share goes to the reflection vault and the rest to the buyback vault.
Either way the market is promoted to ELIGIBLE once the total reaches the
migration threshold.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger
from solders.instruction import AccountMeta  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    BuybackUnderspentError,
    ExternalProgramNotAllowedError,
    InsufficientFundsError,
    InvalidAmountError,
    InvalidConfigAccountError,
    InvalidPdaError,
    MarketMigratedError,
    UnauthorizedError,
)
from market_mill.program.events import BuybackEvent, MarketEligibleEvent
from market_mill.program.forwarder import check_forwarding_allowed, forward
from market_mill.program.ledger import SYSTEM_PROGRAM_ID
from market_mill.program.migration import split_remaining
from market_mill.program.pda import market_signer_seeds
from market_mill.program.reflection import ReflectionAllocation, apply_allocation
from market_mill.program.state import (
    BuybackState,
    Market,
    MarketStatus,
    MillConfig,
    ReflectionState,
    checked_add,
)

if TYPE_CHECKING:
    from market_mill.program.program import MarketMillProgram


@dataclass(frozen=True)
class PerformBuybackAccounts:
    market: Pubkey
    config: Pubkey
    reflection_state: Pubkey
    buyback_state: Pubkey
    payer: Pubkey
    external_program: Pubkey | None = None
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def perform_buyback(
    program: MarketMillProgram,
    accounts: PerformBuybackAccounts,
    *,
    lamports: int,
    swap_ix: bytes | None = None,
    remaining_accounts: Sequence[AccountMeta] = (),
    signers: Iterable[Pubkey] = (),
) -> BuybackEvent:
    # Rejected before any lock or snapshot: no ledger state is touched.
    if lamports <= 0:
        raise InvalidAmountError(f"Buyback amount must be positive, got {lamports}")

    extra_writable, extra_readonly = split_remaining(remaining_accounts)
    writable = {
        accounts.market,
        accounts.reflection_state,
        accounts.buyback_state,
        accounts.payer,
    } | extra_writable
    readonly = {accounts.config, accounts.system_program} | extra_readonly
    if accounts.external_program is not None:
        readonly.add(accounts.external_program)

    with program.ledger.invoke(writable=writable, readonly=readonly, signers=signers) as inv:
        inv.require_signer(accounts.payer)

        market = inv.state_mut(accounts.market, Market)
        if market.config != accounts.config:
            raise InvalidConfigAccountError(f"Market {accounts.market} does not use config {accounts.config}")
        config = inv.state(accounts.config, MillConfig)
        if market.is_migrated:
            raise MarketMigratedError(f"Market {accounts.market} has migrated; buybacks are closed")
        if accounts.payer not in (config.authority, market.creator):
            raise UnauthorizedError(f"{accounts.payer} may not spend the treasury of {accounts.market}")

        buyback = inv.state_mut(accounts.buyback_state, BuybackState)
        reflection = inv.state_mut(accounts.reflection_state, ReflectionState)
        if buyback.market != accounts.market or reflection.market != accounts.market:
            raise InvalidPdaError("Reflection/buyback state does not belong to this market")

        treasury = inv.balance(accounts.market)
        if treasury < lamports:
            raise InsufficientFundsError(f"Treasury holds {treasury} < buyback {lamports}")

        swap_forwarded = bool(swap_ix)
        if swap_ix:
            if accounts.external_program is None:
                raise ExternalProgramNotAllowedError("swap instruction supplied without an external program")
            check_forwarding_allowed(config, accounts.external_program, remaining_accounts)
            forward(
                inv,
                program.runtime,
                caller_program_id=program.program_id,
                external_program=accounts.external_program,
                data=swap_ix,
                remaining_accounts=remaining_accounts,
                signer_seeds=market_signer_seeds(market.base_mint, market.bump),
            )
            spent = treasury - inv.balance(accounts.market)
            if spent < lamports:
                raise BuybackUnderspentError(
                    f"Swap took {spent} lamports from the treasury, expected at least {lamports}"
                )
            buyback.total_buyback_lamports = checked_add(buyback.total_buyback_lamports, lamports)
            allocation = ReflectionAllocation(pool_amount=0)
        else:
            buyback.total_buyback_lamports = checked_add(buyback.total_buyback_lamports, lamports)
            allocation = program.reflection_policy.allocate(
                market, lamports, excluded=frozenset(config.reflection_exclusions)
            )
            apply_allocation(
                inv,
                source=accounts.market,
                reflection_account=accounts.reflection_state,
                reflection=reflection,
                buyback=buyback,
                allocation=allocation,
                funded_amount=lamports,
            )
            inv.transfer(accounts.market, accounts.buyback_state, lamports - allocation.pool_amount)

        was_active = market.status == MarketStatus.ACTIVE
        if market.refresh_eligibility(buyback.total_buyback_lamports, config) and was_active:
            inv.emit(
                MarketEligibleEvent(
                    market=accounts.market,
                    total_buyback_lamports=buyback.total_buyback_lamports,
                    threshold_lamports=market.threshold(config),
                )
            )
            logger.info(f"[BUYBACK] {str(accounts.market)[:12]} reached migration threshold")

        event = BuybackEvent(
            market=accounts.market,
            lamports_spent=lamports,
            reflected_lamports=allocation.pool_amount,
            swap_forwarded=swap_forwarded,
        )
        inv.emit(event)

    logger.info(
        f"[BUYBACK] {str(accounts.market)[:12]} spent={lamports} "
        f"reflected={event.reflected_lamports} swap={swap_forwarded}"
    )
    return event
