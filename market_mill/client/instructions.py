"""Builders for market mill entry-point instructions.

Each builder takes the same typed accounts dataclass the program uses and
lays the keys out in the order the program decodes them, followed by any
remaining accounts for forwarded calls.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import fields
from typing import Any

from solders.instruction import AccountMeta, Instruction  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.client.accounts import to_remaining_accounts
from market_mill.codec import INSTRUCTIONS, encode_instruction_data
from market_mill.errors import (
    InvalidInstructionFormatError,
    ProgramMismatchError,
    UnknownInstructionError,
)
from market_mill.program.buyback import PerformBuybackAccounts
from market_mill.program.forwarder import ForwardPayload
from market_mill.program.migration import PerformMigrationAccounts
from market_mill.program.referral import CreateReferralAccountAccounts


def build_instruction(
    program_id: Pubkey,
    name: str,
    accounts: Mapping[str, Pubkey | None] | Any,
    *,
    remaining_accounts: Sequence[AccountMeta] = (),
    **args: Any,
) -> Instruction:
    """Encode any mill entry point.

    accounts is either a name -> key mapping or one of the program's
    accounts dataclasses. Missing optional accounts become program_id.
    """
    spec = INSTRUCTIONS.get(name)
    if spec is None:
        raise UnknownInstructionError(f"Unknown instruction: {name}")
    if not isinstance(accounts, Mapping):
        accounts = {f.name: getattr(accounts, f.name) for f in fields(accounts)}

    metas: list[AccountMeta] = []
    for slot in spec.accounts:
        key = accounts.get(slot.name)
        if key is None:
            if not slot.optional:
                raise InvalidInstructionFormatError(f"{name}: missing account '{slot.name}'")
            metas.append(AccountMeta(program_id, False, False))
            continue
        metas.append(AccountMeta(key, slot.is_signer, slot.is_writable))
    metas.extend(to_remaining_accounts(remaining_accounts))

    return Instruction(program_id, encode_instruction_data(name, **args), metas)


def build_perform_migration_ix(
    program_id: Pubkey,
    accounts: PerformMigrationAccounts,
    *,
    create_lp: ForwardPayload,
    burn_lp: ForwardPayload | None = None,
    force: bool = False,
) -> Instruction:
    """perform_migration with marshalled create (and optional burn) liquidity calls.

    Both forwarded calls go to accounts.external_program and share one
    remaining-accounts list, so the burn payload must use the same accounts.
    """
    for payload in (create_lp, burn_lp):
        if payload is not None and payload.program_id != accounts.external_program:
            raise ProgramMismatchError(
                f"Payload targets {payload.program_id} but external program is "
                f"{accounts.external_program}"
            )
    if burn_lp is not None and list(burn_lp.accounts) != list(create_lp.accounts):
        raise InvalidInstructionFormatError(
            "burn-liquidity payload must use the same account list as create-liquidity"
        )

    return build_instruction(
        program_id,
        "perform_migration",
        accounts,
        remaining_accounts=create_lp.accounts,
        force=force,
        create_lp_ix=create_lp.data,
        burn_lp_ix=burn_lp.data if burn_lp is not None else None,
    )


def build_perform_buyback_ix(
    program_id: Pubkey,
    accounts: PerformBuybackAccounts,
    *,
    lamports: int,
    swap: ForwardPayload | None = None,
) -> Instruction:
    if swap is not None and swap.program_id != accounts.external_program:
        raise ProgramMismatchError(
            f"Swap payload targets {swap.program_id} but external program is "
            f"{accounts.external_program}"
        )
    return build_instruction(
        program_id,
        "perform_buyback",
        accounts,
        remaining_accounts=swap.accounts if swap is not None else (),
        lamports=lamports,
        swap_ix=swap.data if swap is not None else None,
    )


def build_create_referral_account_ix(
    program_id: Pubkey, accounts: CreateReferralAccountAccounts, *, referrer: Pubkey
) -> Instruction:
    return build_instruction(program_id, "create_referral_account", accounts, referrer=referrer)
