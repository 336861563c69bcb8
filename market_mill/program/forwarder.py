"""CPI forwarder: relays an opaque external instruction under the market authority.

The mill never interprets the forwarded bytes. It only guarantees:
  - the program invoked is exactly the external_program account passed in
    (and, when a full payload is supplied, the one the payload was built for),
  - remaining accounts reach the callee in the same order with the same flags,
  - the signature comes from the market PDA seeds, not from the caller,
  - any failure inside the callee surfaces as ForwardedCallFailedError.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from loguru import logger
from solders.instruction import AccountMeta, Instruction  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import (
    ExternalProgramNotAllowedError,
    ForwardedCallFailedError,
    ProgramMismatchError,
    TooManyForwardedAccountsError,
)
from market_mill.program.ledger import Invocation
from market_mill.program.runtime import Runtime
from market_mill.program.state import MillConfig


@dataclass(frozen=True)
class ForwardPayload:
    """Transport-neutral form of an external instruction. Never persisted."""

    program_id: Pubkey
    data: bytes
    accounts: tuple[AccountMeta, ...]


def check_forwarding_allowed(
    config: MillConfig, external_program: Pubkey, remaining_accounts: Sequence[AccountMeta]
) -> None:
    if not config.is_whitelisted(external_program):
        raise ExternalProgramNotAllowedError(
            f"Program {external_program} is not in the CPI whitelist"
        )
    if len(remaining_accounts) > config.max_forwarded_accounts:
        raise TooManyForwardedAccountsError(
            f"{len(remaining_accounts)} remaining accounts > max {config.max_forwarded_accounts}"
        )


def forward(
    invocation: Invocation,
    runtime: Runtime,
    *,
    caller_program_id: Pubkey,
    external_program: Pubkey,
    data: bytes,
    remaining_accounts: Sequence[AccountMeta],
    signer_seeds: list[bytes],
) -> None:
    instruction = Instruction(external_program, bytes(data), list(remaining_accounts))
    logger.debug(
        f"[FORWARD] -> {str(external_program)[:12]} data={len(data)}B "
        f"accounts={len(remaining_accounts)}"
    )
    try:
        runtime.invoke_signed(
            invocation,
            instruction,
            caller_program_id=caller_program_id,
            signer_seeds=[signer_seeds],
        )
    except Exception as e:
        logger.warning(f"[FORWARD] {str(external_program)[:12]} rejected call: {e}")
        raise ForwardedCallFailedError(str(e), program_id=external_program) from e


def forward_payload(
    invocation: Invocation,
    runtime: Runtime,
    payload: ForwardPayload,
    *,
    caller_program_id: Pubkey,
    external_program: Pubkey,
    signer_seeds: list[bytes],
) -> None:
    """Forward a marshalled payload, refusing a payload built for another program."""
    if payload.program_id != external_program:
        raise ProgramMismatchError(
            f"Payload targets {payload.program_id} but external program is {external_program}"
        )
    forward(
        invocation,
        runtime,
        caller_program_id=caller_program_id,
        external_program=external_program,
        data=payload.data,
        remaining_accounts=payload.accounts,
        signer_seeds=signer_seeds,
    )
