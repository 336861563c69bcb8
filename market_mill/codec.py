"""Wire codec for market mill instructions and accounts.

Instruction data follows the Anchor convention:
  [0:8]  discriminator = sha256("global:<instruction_name>")[:8]
  [8:]   arguments, borsh encoded (little-endian ints, u8 bools,
         Option = 1-byte tag + value, Vec = u32 length + items)

Account data:
  [0:8]  discriminator = sha256("account:<AccountName>")[:8]
  [8:]   fixed little-endian layout (see *_LAYOUT below)

Optional accounts that are absent are passed as the program id itself,
the same placeholder Anchor clients use.
"""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass

from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import InvalidInstructionFormatError, UnknownInstructionError
from market_mill.program.state import (
    BuybackState,
    Market,
    MarketStatus,
    MigrationRecord,
    ReferralAccount,
)


def instruction_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"global:{name}".encode()).digest()[:8]


def account_discriminator(name: str) -> bytes:
    return hashlib.sha256(f"account:{name}".encode()).digest()[:8]


@dataclass(frozen=True)
class AccountSlot:
    name: str
    is_signer: bool = False
    is_writable: bool = False
    optional: bool = False


@dataclass(frozen=True)
class InstructionSpec:
    name: str
    args: tuple[tuple[str, str], ...]
    accounts: tuple[AccountSlot, ...]

    @property
    def discriminator(self) -> bytes:
        return instruction_discriminator(self.name)


_SYSTEM = AccountSlot("system_program")

INSTRUCTIONS: dict[str, InstructionSpec] = {
    spec.name: spec
    for spec in (
        InstructionSpec(
            "create_config",
            (
                ("authority", "pubkey"),
                ("protocol_fee_recipient", "pubkey"),
                ("protocol_fee_share_bps", "u16"),
                ("referral_fee_share_bps", "u16"),
                ("creator_fee_share_bps", "u16"),
                ("migration_threshold_lamports", "u64"),
                ("creator_bonus_lamports", "u64"),
            ),
            (AccountSlot("config", is_writable=True), AccountSlot("payer", True, True), _SYSTEM),
        ),
        InstructionSpec(
            "update_cpi_whitelist",
            (("whitelist", "pubkey_vec"), ("max_forwarded_accounts", "u8")),
            (AccountSlot("config", is_writable=True), AccountSlot("authority", is_signer=True)),
        ),
        InstructionSpec(
            "update_reflection_exclusion",
            (("add", "bool"), ("address", "pubkey")),
            (AccountSlot("config", is_writable=True), AccountSlot("authority", is_signer=True)),
        ),
        InstructionSpec(
            "update_fee_shares",
            (
                ("protocol_fee_share_bps", "u16"),
                ("referral_fee_share_bps", "u16"),
                ("creator_fee_share_bps", "u16"),
            ),
            (AccountSlot("config", is_writable=True), AccountSlot("authority", is_signer=True)),
        ),
        InstructionSpec(
            "update_protocol_fee_recipient",
            (("protocol_fee_recipient", "pubkey"),),
            (AccountSlot("config", is_writable=True), AccountSlot("authority", is_signer=True)),
        ),
        InstructionSpec(
            "transfer_config_ownership",
            (("new_authority", "pubkey_opt"),),
            (AccountSlot("config", is_writable=True), AccountSlot("authority", is_signer=True)),
        ),
        InstructionSpec(
            "accept_config_ownership",
            (),
            (AccountSlot("config", is_writable=True), AccountSlot("pending_authority", is_signer=True)),
        ),
        InstructionSpec(
            "create_market",
            (("migration_threshold_lamports", "u64"),),
            (
                AccountSlot("config"),
                AccountSlot("market", is_writable=True),
                AccountSlot("buyback_state", is_writable=True),
                AccountSlot("reflection_state", is_writable=True),
                AccountSlot("base_mint"),
                AccountSlot("creator"),
                AccountSlot("authority", True, True),
                _SYSTEM,
            ),
        ),
        InstructionSpec(
            "perform_migration",
            (("force", "bool"), ("create_lp_ix", "bytes_opt"), ("burn_lp_ix", "bytes_opt")),
            (
                AccountSlot("market", is_writable=True),
                AccountSlot("config"),
                AccountSlot("buyback_state", is_writable=True),
                AccountSlot("creator", is_writable=True),
                AccountSlot("authority", is_signer=True),
                AccountSlot("external_program"),
                _SYSTEM,
            ),
        ),
        InstructionSpec(
            "perform_buyback",
            (("lamports", "u64"), ("swap_ix", "bytes_opt")),
            (
                AccountSlot("market", is_writable=True),
                AccountSlot("config"),
                AccountSlot("reflection_state", is_writable=True),
                AccountSlot("buyback_state", is_writable=True),
                AccountSlot("payer", True, True),
                AccountSlot("external_program", optional=True),
                _SYSTEM,
            ),
        ),
        InstructionSpec(
            "settle_reflection",
            (("added_lamports", "u64"),),
            (
                AccountSlot("market", is_writable=True),
                AccountSlot("config"),
                AccountSlot("reflection_state", is_writable=True),
                AccountSlot("buyback_state", is_writable=True),
                AccountSlot("authority", True, True),
                _SYSTEM,
            ),
        ),
        InstructionSpec(
            "claim_reflection",
            (),
            (
                AccountSlot("market"),
                AccountSlot("config"),
                AccountSlot("reflection_state", is_writable=True),
                AccountSlot("owner", True, True),
            ),
        ),
        InstructionSpec(
            "create_referral_account",
            (("referrer", "pubkey"),),
            (
                AccountSlot("config"),
                AccountSlot("referral_account", is_writable=True),
                AccountSlot("user", True, True),
                _SYSTEM,
            ),
        ),
        InstructionSpec(
            "claim_referral_fees",
            (),
            (
                AccountSlot("referral_account", is_writable=True),
                AccountSlot("referrer", True, True),
                _SYSTEM,
            ),
        ),
        InstructionSpec(
            "buy",
            (("max_quote", "u64"), ("min_base", "u64")),
            (
                AccountSlot("config"),
                AccountSlot("market", is_writable=True),
                AccountSlot("base_token_mint"),
                AccountSlot("market_base_token_ata", is_writable=True),
                AccountSlot("buyer_base_token_ata", is_writable=True),
                AccountSlot("creator", is_writable=True),
                AccountSlot("referral_account", is_writable=True, optional=True),
                AccountSlot("protocol_fee_recipient", is_writable=True),
                AccountSlot("buyer", True, True),
                _SYSTEM,
                AccountSlot("token_program"),
            ),
        ),
    )
}

_BY_DISCRIMINATOR = {spec.discriminator: spec for spec in INSTRUCTIONS.values()}


# ─── Borsh primitives ─────────────────────────────────────────────────


def _encode_value(kind: str, value: object) -> bytes:
    if kind == "bool":
        return struct.pack("<B", 1 if value else 0)
    if kind == "u8":
        return struct.pack("<B", value)
    if kind == "u16":
        return struct.pack("<H", value)
    if kind == "u64":
        return struct.pack("<Q", value)
    if kind == "pubkey":
        return bytes(value)  # type: ignore[arg-type]
    if kind == "pubkey_opt":
        return b"\x00" if value is None else b"\x01" + bytes(value)  # type: ignore[arg-type]
    if kind == "pubkey_vec":
        keys = list(value)  # type: ignore[call-overload]
        return struct.pack("<I", len(keys)) + b"".join(bytes(k) for k in keys)
    if kind == "bytes_opt":
        if value is None:
            return b"\x00"
        raw = bytes(value)  # type: ignore[call-overload]
        return b"\x01" + struct.pack("<I", len(raw)) + raw
    raise ValueError(f"Unsupported arg type: {kind}")


class _Reader:
    def __init__(self, data: bytes) -> None:
        self._data = data
        self._pos = 0

    def take(self, size: int) -> bytes:
        end = self._pos + size
        if end > len(self._data):
            raise InvalidInstructionFormatError(
                f"Instruction data truncated at offset {self._pos} (need {size} bytes)"
            )
        chunk = self._data[self._pos : end]
        self._pos = end
        return chunk

    def unpack(self, fmt: str) -> int:
        return struct.unpack(fmt, self.take(struct.calcsize(fmt)))[0]

    @property
    def remaining(self) -> int:
        return len(self._data) - self._pos

    def read(self, kind: str) -> object:
        if kind == "bool":
            return self.unpack("<B") != 0
        if kind == "u8":
            return self.unpack("<B")
        if kind == "u16":
            return self.unpack("<H")
        if kind == "u64":
            return self.unpack("<Q")
        if kind == "pubkey":
            return Pubkey.from_bytes(self.take(32))
        if kind == "pubkey_opt":
            return Pubkey.from_bytes(self.take(32)) if self._tag() else None
        if kind == "pubkey_vec":
            count = self.unpack("<I")
            return [Pubkey.from_bytes(self.take(32)) for _ in range(count)]
        if kind == "bytes_opt":
            if not self._tag():
                return None
            return self.take(self.unpack("<I"))
        raise ValueError(f"Unsupported arg type: {kind}")

    def _tag(self) -> bool:
        tag = self.unpack("<B")
        if tag not in (0, 1):
            raise InvalidInstructionFormatError(f"Invalid option tag {tag}")
        return tag == 1


def encode_instruction_data(name: str, **args: object) -> bytes:
    spec = INSTRUCTIONS.get(name)
    if spec is None:
        raise UnknownInstructionError(f"Unknown instruction: {name}")
    parts = [spec.discriminator]
    for arg_name, kind in spec.args:
        parts.append(_encode_value(kind, args.get(arg_name)))
    return b"".join(parts)


def decode_instruction_data(data: bytes) -> tuple[InstructionSpec, dict[str, object]]:
    """Split raw instruction data into its spec and decoded arguments."""
    if len(data) < 8:
        raise InvalidInstructionFormatError(f"Instruction data too short: {len(data)} bytes")
    spec = _BY_DISCRIMINATOR.get(bytes(data[:8]))
    if spec is None:
        raise UnknownInstructionError(f"Unknown discriminator {bytes(data[:8]).hex()}")

    reader = _Reader(bytes(data[8:]))
    args = {arg_name: reader.read(kind) for arg_name, kind in spec.args}
    if reader.remaining:
        raise InvalidInstructionFormatError(
            f"{spec.name}: {reader.remaining} trailing bytes after arguments"
        )
    return spec, args


# ─── Account layouts ──────────────────────────────────────────────────

MARKET_DISCRIMINATOR = account_discriminator("Market")
BUYBACK_STATE_DISCRIMINATOR = account_discriminator("BuybackState")
REFERRAL_ACCOUNT_DISCRIMINATOR = account_discriminator("ReferralAccount")

# config, base_mint, creator, bump, status, eligible, migrated, forced,
# migration_threshold_lamports, total_supply, pending_creator_fees
MARKET_LAYOUT = struct.Struct("<32s32s32sBBBBBQQQ")
# market, bump, total_buyback_lamports, total_reflected_lamports
BUYBACK_STATE_LAYOUT = struct.Struct("<32sBQQ")
# config, referrer, owner, bump, pending_lamports
REFERRAL_ACCOUNT_LAYOUT = struct.Struct("<32s32s32sBQ")


def encode_market(market: Market) -> bytes:
    """Serialize the fixed part of a market (holder balances live in token accounts)."""
    return MARKET_DISCRIMINATOR + MARKET_LAYOUT.pack(
        bytes(market.config),
        bytes(market.base_mint),
        bytes(market.creator),
        market.bump,
        int(market.status),
        int(market.migration.eligible),
        int(market.migration.migrated),
        int(market.migration.forced),
        market.migration_threshold_lamports,
        market.total_supply,
        market.pending_creator_fees,
    )


def decode_market(data: bytes) -> Market:
    body = _strip_discriminator(data, MARKET_DISCRIMINATOR, MARKET_LAYOUT.size, "Market")
    (
        config,
        base_mint,
        creator,
        bump,
        status,
        eligible,
        migrated,
        forced,
        threshold,
        total_supply,
        pending_creator_fees,
    ) = MARKET_LAYOUT.unpack_from(body)
    return Market(
        config=Pubkey.from_bytes(config),
        base_mint=Pubkey.from_bytes(base_mint),
        creator=Pubkey.from_bytes(creator),
        bump=bump,
        status=MarketStatus(status),
        migration=MigrationRecord(
            eligible=bool(eligible), migrated=bool(migrated), forced=bool(forced)
        ),
        migration_threshold_lamports=threshold,
        total_supply=total_supply,
        pending_creator_fees=pending_creator_fees,
    )


def encode_buyback_state(state: BuybackState) -> bytes:
    return BUYBACK_STATE_DISCRIMINATOR + BUYBACK_STATE_LAYOUT.pack(
        bytes(state.market),
        state.bump,
        state.total_buyback_lamports,
        state.total_reflected_lamports,
    )


def decode_buyback_state(data: bytes) -> BuybackState:
    body = _strip_discriminator(
        data, BUYBACK_STATE_DISCRIMINATOR, BUYBACK_STATE_LAYOUT.size, "BuybackState"
    )
    market, bump, total_lamports, reflected = BUYBACK_STATE_LAYOUT.unpack_from(body)
    return BuybackState(
        market=Pubkey.from_bytes(market),
        bump=bump,
        total_buyback_lamports=total_lamports,
        total_reflected_lamports=reflected,
    )


def encode_referral_account(account: ReferralAccount) -> bytes:
    return REFERRAL_ACCOUNT_DISCRIMINATOR + REFERRAL_ACCOUNT_LAYOUT.pack(
        bytes(account.config),
        bytes(account.referrer),
        bytes(account.owner),
        account.bump,
        account.pending_lamports,
    )


def decode_referral_account(data: bytes) -> ReferralAccount:
    body = _strip_discriminator(
        data, REFERRAL_ACCOUNT_DISCRIMINATOR, REFERRAL_ACCOUNT_LAYOUT.size, "ReferralAccount"
    )
    config, referrer, owner, bump, pending = REFERRAL_ACCOUNT_LAYOUT.unpack_from(body)
    return ReferralAccount(
        config=Pubkey.from_bytes(config),
        referrer=Pubkey.from_bytes(referrer),
        owner=Pubkey.from_bytes(owner),
        bump=bump,
        pending_lamports=pending,
    )


def _strip_discriminator(data: bytes, discriminator: bytes, size: int, name: str) -> bytes:
    if len(data) < 8 + size:
        raise ValueError(f"{name} data too short: {len(data)} < {8 + size}")
    if data[:8] != discriminator:
        raise ValueError(f"Wrong discriminator for {name}")
    return data[8 : 8 + size]
