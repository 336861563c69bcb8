"""Bonding-curve purchase. Pricing is delegated to a PriceCurve.

Fee split (config basis points, applied to max_quote):
  protocol fee -> protocol_fee_recipient, minus the referral share
  referral share of the protocol fee -> buyer's referral PDA (pending_lamports)
  creator fee -> treasury, accrued in market.pending_creator_fees
  remainder  -> treasury, priced into base tokens
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    InvalidAmountError,
    InvalidConfigAccountError,
    InvalidReferralAccountError,
    MarketMigratedError,
    SlippageExceededError,
    UnauthorizedError,
)
from market_mill.program.events import SwapEvent
from market_mill.program.ledger import SYSTEM_PROGRAM_ID
from market_mill.program.pda import assert_pda, market_seeds
from market_mill.program.state import (
    BPS_DENOMINATOR,
    Market,
    MillConfig,
    ReferralAccount,
    checked_add,
)

if TYPE_CHECKING:
    from market_mill.program.program import MarketMillProgram

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")


class PriceCurve(Protocol):
    def base_out(self, market: Market, quote_in: int) -> int: ...


class FlatPriceCurve:
    """Constant lamports-per-base-unit price."""

    def __init__(self, lamports_per_token: int = 1) -> None:
        if lamports_per_token <= 0:
            raise ValueError("lamports_per_token must be positive")
        self._price = lamports_per_token

    def base_out(self, market: Market, quote_in: int) -> int:
        return quote_in // self._price


@dataclass(frozen=True)
class BuyAccounts:
    config: Pubkey
    market: Pubkey
    base_token_mint: Pubkey
    market_base_token_ata: Pubkey
    buyer_base_token_ata: Pubkey
    creator: Pubkey
    protocol_fee_recipient: Pubkey
    buyer: Pubkey
    referral_account: Pubkey | None = None
    system_program: Pubkey = SYSTEM_PROGRAM_ID
    token_program: Pubkey = TOKEN_PROGRAM_ID


def buy(
    program: MarketMillProgram,
    accounts: BuyAccounts,
    *,
    max_quote: int,
    min_base: int,
    signers: Iterable[Pubkey] = (),
) -> SwapEvent:
    if max_quote <= 0:
        raise InvalidAmountError(f"Quote amount must be positive, got {max_quote}")

    writable = {
        accounts.market,
        accounts.buyer,
        accounts.protocol_fee_recipient,
        accounts.market_base_token_ata,
        accounts.buyer_base_token_ata,
    }
    if accounts.referral_account is not None:
        writable.add(accounts.referral_account)
    readonly = {
        accounts.config,
        accounts.base_token_mint,
        accounts.creator,
        accounts.system_program,
        accounts.token_program,
    }

    with program.ledger.invoke(writable=writable, readonly=readonly, signers=signers) as inv:
        inv.require_signer(accounts.buyer)

        market = inv.state_mut(accounts.market, Market)
        if market.config != accounts.config:
            raise InvalidConfigAccountError(f"Market {accounts.market} does not use config {accounts.config}")
        config = inv.state(accounts.config, MillConfig)
        assert_pda(market_seeds(accounts.base_token_mint), program.program_id, accounts.market)
        if market.is_migrated:
            raise MarketMigratedError(f"Market {accounts.market} has migrated; buys are closed")
        if accounts.protocol_fee_recipient != config.protocol_fee_recipient:
            raise UnauthorizedError("Protocol fee recipient does not match config")
        if accounts.creator != market.creator:
            raise UnauthorizedError(f"{accounts.creator} is not the creator of {accounts.market}")

        referral: ReferralAccount | None = None
        if accounts.referral_account is not None:
            referral = inv.state_mut(accounts.referral_account, ReferralAccount)
            if referral.owner != accounts.buyer or referral.config != accounts.config:
                raise InvalidReferralAccountError("Referral account is not bound to this buyer")

        protocol_fee = max_quote * config.protocol_fee_share_bps // BPS_DENOMINATOR
        referral_fee = (
            protocol_fee * config.referral_fee_share_bps // BPS_DENOMINATOR if referral else 0
        )
        creator_fee = max_quote * config.creator_fee_share_bps // BPS_DENOMINATOR
        net_quote = max_quote - protocol_fee - creator_fee

        base_out = program.price_curve.base_out(market, net_quote)
        if base_out == 0 or base_out < min_base:
            raise SlippageExceededError(f"base out {base_out} < min {min_base}")

        inv.transfer(accounts.buyer, accounts.protocol_fee_recipient, protocol_fee - referral_fee)
        if referral is not None and accounts.referral_account is not None:
            inv.transfer(accounts.buyer, accounts.referral_account, referral_fee)
            referral.pending_lamports = checked_add(referral.pending_lamports, referral_fee)
        inv.transfer(accounts.buyer, accounts.market, net_quote + creator_fee)
        market.pending_creator_fees = checked_add(market.pending_creator_fees, creator_fee)
        market.mint_to(accounts.buyer, base_out)

        event = SwapEvent(
            market=accounts.market,
            buyer=accounts.buyer,
            quote_in=max_quote,
            base_out=base_out,
            protocol_fee=protocol_fee,
            referral_fee=referral_fee,
            creator_fee=creator_fee,
        )
        inv.emit(event)

    logger.debug(
        f"[BUY] {str(accounts.buyer)[:12]} bought {base_out} for {max_quote} lamports "
        f"(referral={referral_fee})"
    )
    return event
