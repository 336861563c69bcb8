"""Referral binding and referral fee claims.

A user binds a referrer exactly once. The referral PDA is keyed by
(config, user), so a second bind attempt finds the account already present
and fails with AlreadyBoundError; the stored referrer is never compared or
overwritten.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING

from loguru import logger
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import AlreadyBoundError, NothingToClaimError, UnauthorizedError
from market_mill.program.events import ReferralBoundEvent, ReferralFeeClaimEvent
from market_mill.program.ledger import SYSTEM_PROGRAM_ID
from market_mill.program.pda import assert_pda
from market_mill.program.state import REFERRAL_PDA_SEED, MillConfig, ReferralAccount

if TYPE_CHECKING:
    from market_mill.program.program import MarketMillProgram


@dataclass(frozen=True)
class CreateReferralAccountAccounts:
    config: Pubkey
    referral_account: Pubkey
    user: Pubkey
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def create_referral_account(
    program: MarketMillProgram,
    accounts: CreateReferralAccountAccounts,
    *,
    referrer: Pubkey,
    signers: Iterable[Pubkey] = (),
) -> ReferralBoundEvent:
    writable = {accounts.referral_account, accounts.user}
    readonly = {accounts.config, accounts.system_program}
    with program.ledger.invoke(writable=writable, readonly=readonly, signers=signers) as inv:
        inv.require_signer(accounts.user)
        inv.state(accounts.config, MillConfig)
        bump = assert_pda(
            [REFERRAL_PDA_SEED, bytes(accounts.config), bytes(accounts.user)],
            program.program_id,
            accounts.referral_account,
        )
        if inv.exists(accounts.referral_account):
            raise AlreadyBoundError(f"{accounts.user} already has a referral binding")

        inv.create(
            accounts.referral_account,
            owner=program.program_id,
            state=ReferralAccount(
                config=accounts.config,
                referrer=referrer,
                owner=accounts.user,
                bump=bump,
            ),
        )
        event = ReferralBoundEvent(config=accounts.config, user=accounts.user, referrer=referrer)
        inv.emit(event)

    logger.info(f"[REFERRAL] {str(accounts.user)[:12]} bound to referrer {str(referrer)[:12]}")
    return event


@dataclass(frozen=True)
class ClaimReferralFeesAccounts:
    referral_account: Pubkey
    referrer: Pubkey
    system_program: Pubkey = SYSTEM_PROGRAM_ID


def claim_referral_fees(
    program: MarketMillProgram,
    accounts: ClaimReferralFeesAccounts,
    *,
    signers: Iterable[Pubkey] = (),
) -> ReferralFeeClaimEvent:
    writable = {accounts.referral_account, accounts.referrer}
    with program.ledger.invoke(
        writable=writable, readonly={accounts.system_program}, signers=signers
    ) as inv:
        inv.require_signer(accounts.referrer)
        referral = inv.state_mut(accounts.referral_account, ReferralAccount)
        if referral.referrer != accounts.referrer:
            raise UnauthorizedError(f"{accounts.referrer} is not the referrer of this account")
        if referral.pending_lamports == 0:
            raise NothingToClaimError("No referral fees accrued")

        amount = referral.pending_lamports
        inv.transfer(accounts.referral_account, accounts.referrer, amount)
        referral.pending_lamports = 0

        event = ReferralFeeClaimEvent(referrer=accounts.referrer, lamports=amount)
        inv.emit(event)

    logger.info(f"[REFERRAL] {str(accounts.referrer)[:12]} claimed {amount} lamports")
    return event
