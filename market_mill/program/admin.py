"""Privileged config and market setup entry points."""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    ExclusionListFullError,
    InvalidAmountError,
    InvalidFeeShareError,
    InvalidPdaError,
    UnauthorizedError,
)
from market_mill.program.events import (
    ConfigCreatedEvent,
    ConfigOwnershipTransferredEvent,
    MarketCreatedEvent,
)
from market_mill.program.ledger import SYSTEM_PROGRAM_ID, Invocation
from market_mill.program.pda import (
    assert_pda,
    find_buyback_state_address,
    find_reflection_state_address,
    market_seeds,
)
from market_mill.program.state import (
    BPS_DENOMINATOR,
    BuybackState,
    Market,
    MillConfig,
    ReflectionState,
)

if TYPE_CHECKING:
    from market_mill.program.program import MarketMillProgram

MAX_FORWARDED_ACCOUNTS_LIMIT = 255  # stored as u8
MAX_REFLECTION_EXCLUSIONS = 128


def _check_bps(**shares: int) -> None:
    for name, value in shares.items():
        if not 0 <= value <= BPS_DENOMINATOR:
            raise InvalidFeeShareError(f"{name}={value} outside 0..{BPS_DENOMINATOR}")


def _authorized_config(inv: Invocation, config_key: Pubkey, authority: Pubkey) -> MillConfig:
    inv.require_signer(authority)
    config = inv.state_mut(config_key, MillConfig)
    if authority != config.authority:
        raise UnauthorizedError(f"{authority} is not the authority of config {config_key}")
    return config


@dataclass(frozen=True)
class CreateConfigAccounts:
    config: Pubkey
    payer: Pubkey
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def create_config(
    program: MarketMillProgram,
    accounts: CreateConfigAccounts,
    *,
    authority: Pubkey,
    protocol_fee_recipient: Pubkey,
    protocol_fee_share_bps: int,
    referral_fee_share_bps: int,
    creator_fee_share_bps: int = 0,
    migration_threshold_lamports: int,
    creator_bonus_lamports: int = 0,
    signers: Iterable[Pubkey] = (),
) -> ConfigCreatedEvent:
    _check_bps(
        protocol_fee_share_bps=protocol_fee_share_bps,
        referral_fee_share_bps=referral_fee_share_bps,
        creator_fee_share_bps=creator_fee_share_bps,
    )
    if protocol_fee_share_bps + creator_fee_share_bps > BPS_DENOMINATOR:
        raise InvalidFeeShareError("protocol + creator shares exceed 100%")
    if migration_threshold_lamports <= 0:
        raise InvalidAmountError(
            f"migration_threshold_lamports must be positive, got {migration_threshold_lamports}"
        )

    with program.ledger.invoke(
        writable={accounts.config, accounts.payer},
        readonly={accounts.system_program},
        signers=signers,
    ) as inv:
        inv.require_signer(accounts.payer)
        inv.create(
            accounts.config,
            owner=program.program_id,
            state=MillConfig(
                authority=authority,
                protocol_fee_recipient=protocol_fee_recipient,
                protocol_fee_share_bps=protocol_fee_share_bps,
                referral_fee_share_bps=referral_fee_share_bps,
                creator_fee_share_bps=creator_fee_share_bps,
                migration_threshold_lamports=migration_threshold_lamports,
                creator_bonus_lamports=creator_bonus_lamports,
            ),
        )
        event = ConfigCreatedEvent(
            config=accounts.config,
            authority=authority,
            protocol_fee_share_bps=protocol_fee_share_bps,
            referral_fee_share_bps=referral_fee_share_bps,
        )
        inv.emit(event)

    logger.info(f"[ADMIN] Config {str(accounts.config)[:12]} created, authority={authority}")
    return event


@dataclass(frozen=True)
class ConfigAuthorityAccounts:
    config: Pubkey
    authority: Pubkey


def update_cpi_whitelist(
    program: MarketMillProgram,
    accounts: ConfigAuthorityAccounts,
    *,
    whitelist: list[Pubkey],
    max_forwarded_accounts: int,
    signers: Iterable[Pubkey] = (),
) -> None:
    if not 0 <= max_forwarded_accounts <= MAX_FORWARDED_ACCOUNTS_LIMIT:
        raise ValueError(f"max_forwarded_accounts must fit in a u8, got {max_forwarded_accounts}")
    with program.ledger.invoke(
        writable={accounts.config}, readonly={accounts.authority}, signers=signers
    ) as inv:
        config = _authorized_config(inv, accounts.config, accounts.authority)
        config.cpi_whitelist = list(whitelist)
        config.max_forwarded_accounts = max_forwarded_accounts
    logger.info(
        f"[ADMIN] CPI whitelist set: {len(whitelist)} programs, "
        f"max {max_forwarded_accounts} forwarded accounts"
    )


def update_reflection_exclusion(
    program: MarketMillProgram,
    accounts: ConfigAuthorityAccounts,
    *,
    add: bool,
    address: Pubkey,
    signers: Iterable[Pubkey] = (),
) -> None:
    """Add address to, or remove it from, the holders that never receive reflections."""
    with program.ledger.invoke(
        writable={accounts.config}, readonly={accounts.authority}, signers=signers
    ) as inv:
        config = _authorized_config(inv, accounts.config, accounts.authority)
        if not add:
            config.reflection_exclusions = [a for a in config.reflection_exclusions if a != address]
        elif address not in config.reflection_exclusions:
            if len(config.reflection_exclusions) >= MAX_REFLECTION_EXCLUSIONS:
                raise ExclusionListFullError(
                    f"Exclusion list already holds {MAX_REFLECTION_EXCLUSIONS} addresses"
                )
            config.reflection_exclusions.append(address)
    logger.info(f"[ADMIN] Reflection exclusion {'added' if add else 'removed'}: {address}")


def update_fee_shares(
    program: MarketMillProgram,
    accounts: ConfigAuthorityAccounts,
    *,
    protocol_fee_share_bps: int,
    referral_fee_share_bps: int,
    creator_fee_share_bps: int,
    signers: Iterable[Pubkey] = (),
) -> None:
    _check_bps(
        protocol_fee_share_bps=protocol_fee_share_bps,
        referral_fee_share_bps=referral_fee_share_bps,
        creator_fee_share_bps=creator_fee_share_bps,
    )
    if protocol_fee_share_bps + creator_fee_share_bps > BPS_DENOMINATOR:
        raise InvalidFeeShareError("protocol + creator shares exceed 100%")
    with program.ledger.invoke(
        writable={accounts.config}, readonly={accounts.authority}, signers=signers
    ) as inv:
        config = _authorized_config(inv, accounts.config, accounts.authority)
        config.protocol_fee_share_bps = protocol_fee_share_bps
        config.referral_fee_share_bps = referral_fee_share_bps
        config.creator_fee_share_bps = creator_fee_share_bps


def update_protocol_fee_recipient(
    program: MarketMillProgram,
    accounts: ConfigAuthorityAccounts,
    *,
    protocol_fee_recipient: Pubkey,
    signers: Iterable[Pubkey] = (),
) -> None:
    with program.ledger.invoke(
        writable={accounts.config}, readonly={accounts.authority}, signers=signers
    ) as inv:
        config = _authorized_config(inv, accounts.config, accounts.authority)
        config.protocol_fee_recipient = protocol_fee_recipient


def transfer_config_ownership(
    program: MarketMillProgram,
    accounts: ConfigAuthorityAccounts,
    *,
    new_authority: Pubkey | None,
    signers: Iterable[Pubkey] = (),
) -> None:
    """First step of the two-step handover. None cancels a pending transfer."""
    with program.ledger.invoke(
        writable={accounts.config}, readonly={accounts.authority}, signers=signers
    ) as inv:
        config = _authorized_config(inv, accounts.config, accounts.authority)
        config.pending_authority = new_authority


@dataclass(frozen=True)
class AcceptConfigOwnershipAccounts:
    config: Pubkey
    pending_authority: Pubkey


def accept_config_ownership(
    program: MarketMillProgram,
    accounts: AcceptConfigOwnershipAccounts,
    *,
    signers: Iterable[Pubkey] = (),
) -> ConfigOwnershipTransferredEvent:
    with program.ledger.invoke(
        writable={accounts.config}, readonly={accounts.pending_authority}, signers=signers
    ) as inv:
        inv.require_signer(accounts.pending_authority)
        config = inv.state_mut(accounts.config, MillConfig)
        if config.pending_authority is None or config.pending_authority != accounts.pending_authority:
            raise UnauthorizedError(f"{accounts.pending_authority} is not the pending authority")
        event = ConfigOwnershipTransferredEvent(
            config=accounts.config,
            previous_authority=config.authority,
            new_authority=accounts.pending_authority,
        )
        config.authority = accounts.pending_authority
        config.pending_authority = None
        inv.emit(event)

    logger.info(f"[ADMIN] Config authority is now {event.new_authority}")
    return event


@dataclass(frozen=True)
class CreateMarketAccounts:
    config: Pubkey
    market: Pubkey
    buyback_state: Pubkey
    reflection_state: Pubkey
    base_mint: Pubkey
    creator: Pubkey
    authority: Pubkey
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def create_market(
    program: MarketMillProgram,
    accounts: CreateMarketAccounts,
    *,
    migration_threshold_lamports: int = 0,
    signers: Iterable[Pubkey] = (),
) -> MarketCreatedEvent:
    """Create the market PDA plus its buyback and reflection state.

    migration_threshold_lamports=0 keeps the config-wide threshold.
    """
    writable = {
        accounts.market,
        accounts.buyback_state,
        accounts.reflection_state,
        accounts.authority,
    }
    readonly = {accounts.config, accounts.base_mint, accounts.creator, accounts.system_program}
    with program.ledger.invoke(writable=writable, readonly=readonly, signers=signers) as inv:
        inv.require_signer(accounts.authority)
        config = inv.state(accounts.config, MillConfig)
        if accounts.authority != config.authority:
            raise UnauthorizedError("Only the config authority may create markets")

        market_bump = assert_pda(market_seeds(accounts.base_mint), program.program_id, accounts.market)
        buyback_key, buyback_bump = find_buyback_state_address(accounts.market, program.program_id)
        reflection_key, reflection_bump = find_reflection_state_address(
            accounts.market, program.program_id
        )
        _assert_key(accounts.buyback_state, buyback_key)
        _assert_key(accounts.reflection_state, reflection_key)

        inv.create(
            accounts.market,
            owner=program.program_id,
            state=Market(
                config=accounts.config,
                base_mint=accounts.base_mint,
                creator=accounts.creator,
                bump=market_bump,
                migration_threshold_lamports=migration_threshold_lamports,
            ),
        )
        inv.create(
            accounts.buyback_state,
            owner=program.program_id,
            state=BuybackState(market=accounts.market, bump=buyback_bump),
        )
        inv.create(
            accounts.reflection_state,
            owner=program.program_id,
            state=ReflectionState(market=accounts.market, bump=reflection_bump),
        )
        event = MarketCreatedEvent(
            market=accounts.market,
            base_mint=accounts.base_mint,
            creator=accounts.creator,
            migration_threshold_lamports=migration_threshold_lamports or config.migration_threshold_lamports,
        )
        inv.emit(event)

    logger.info(f"[ADMIN] Market {str(accounts.market)[:12]} created for mint {str(accounts.base_mint)[:12]}")
    return event


def _assert_key(account: Pubkey, expected: Pubkey) -> None:
    if account != expected:
        raise InvalidPdaError(f"{account} is not the expected PDA {expected}")
