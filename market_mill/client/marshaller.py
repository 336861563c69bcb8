"""Instruction marshaller: external instruction -> ForwardPayload.

Accepts either a solders Instruction (from an SDK builder) or the JSON
instruction shape aggregator APIs return:

    {"programId": "<base58>",
     "accounts": [{"pubkey": "<base58>", "isSigner": bool, "isWritable": bool}, ...],
     "data": "<base64>"}

Data bytes and account order/flags are carried over untouched. Only the
structure is checked; what the instruction means is the callee's business.
"""

from __future__ import annotations

import base64
import binascii
from typing import Any

from solders.instruction import AccountMeta, Instruction  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import InvalidInstructionFormatError
from market_mill.program.forwarder import ForwardPayload


def instruction_to_forward_payload(ix: Instruction | dict[str, Any]) -> ForwardPayload:
    if isinstance(ix, Instruction):
        return ForwardPayload(
            program_id=ix.program_id,
            data=bytes(ix.data),
            accounts=tuple(
                AccountMeta(m.pubkey, m.is_signer, m.is_writable) for m in ix.accounts
            ),
        )
    if isinstance(ix, dict):
        return _from_json(ix)
    raise InvalidInstructionFormatError(f"Cannot marshal instruction of type {type(ix).__name__}")


def _from_json(ix_data: dict[str, Any]) -> ForwardPayload:
    try:
        program_id = _pubkey(ix_data["programId"], "programId")
        raw_accounts = ix_data["accounts"]
        raw_data = ix_data["data"]
    except KeyError as e:
        raise InvalidInstructionFormatError(f"Instruction JSON missing field {e}") from e

    if not isinstance(raw_accounts, list):
        raise InvalidInstructionFormatError("Instruction 'accounts' must be a list")
    if not isinstance(raw_data, str):
        raise InvalidInstructionFormatError("Instruction 'data' must be a base64 string")

    try:
        data = base64.b64decode(raw_data, validate=True)
    except (binascii.Error, ValueError) as e:
        raise InvalidInstructionFormatError(f"Instruction data is not valid base64: {e}") from e

    accounts = tuple(_account_meta(a, i) for i, a in enumerate(raw_accounts))
    return ForwardPayload(program_id=program_id, data=data, accounts=accounts)


def _account_meta(raw: Any, index: int) -> AccountMeta:
    if not isinstance(raw, dict):
        raise InvalidInstructionFormatError(f"Account #{index} is not an object")
    try:
        pubkey = _pubkey(raw["pubkey"], f"accounts[{index}].pubkey")
        is_signer = raw["isSigner"]
        is_writable = raw["isWritable"]
    except KeyError as e:
        raise InvalidInstructionFormatError(f"Account #{index} missing field {e}") from e
    # No coercion: "true"/1 are rejected rather than guessed at
    if not isinstance(is_signer, bool) or not isinstance(is_writable, bool):
        raise InvalidInstructionFormatError(f"Account #{index} flags must be booleans")
    return AccountMeta(pubkey=pubkey, is_signer=is_signer, is_writable=is_writable)


def _pubkey(value: Any, field_name: str) -> Pubkey:
    if isinstance(value, Pubkey):
        return value
    if not isinstance(value, str):
        raise InvalidInstructionFormatError(f"{field_name} must be a base58 string")
    try:
        return Pubkey.from_string(value)
    except ValueError as e:
        raise InvalidInstructionFormatError(f"{field_name} is not a valid pubkey: {value!r}") from e
