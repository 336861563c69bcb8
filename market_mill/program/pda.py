"""Program-derived addresses used by the market mill.

The market PDA is also the program-derived authority: forwarded calls and
treasury transfers are signed with its seeds, never with a held private key.
"""

from __future__ import annotations

from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.errors import InvalidPdaError
from market_mill.program.state import (
    BUYBACK_PDA_SEED,
    MARKET_PDA_SEED,
    REFERRAL_PDA_SEED,
    REFLECTION_PDA_SEED,
)


def market_seeds(base_mint: Pubkey) -> list[bytes]:
    return [MARKET_PDA_SEED, bytes(base_mint)]


def market_signer_seeds(base_mint: Pubkey, bump: int) -> list[bytes]:
    """Seeds (with bump) the runtime uses to sign as the market authority."""
    return [*market_seeds(base_mint), bytes([bump])]


def find_market_address(base_mint: Pubkey, program_id: Pubkey) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address(market_seeds(base_mint), program_id)


def find_buyback_state_address(market: Pubkey, program_id: Pubkey) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address([BUYBACK_PDA_SEED, bytes(market)], program_id)


def find_reflection_state_address(market: Pubkey, program_id: Pubkey) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address([REFLECTION_PDA_SEED, bytes(market)], program_id)


def find_referral_address(
    config: Pubkey, user: Pubkey, program_id: Pubkey
) -> tuple[Pubkey, int]:
    return Pubkey.find_program_address([REFERRAL_PDA_SEED, bytes(config), bytes(user)], program_id)


def assert_pda(seeds: list[bytes], program_id: Pubkey, account: Pubkey) -> int:
    """Check account is the canonical PDA for seeds. Returns the bump."""
    derived, bump = Pubkey.find_program_address(seeds, program_id)
    if derived != account:
        raise InvalidPdaError(f"{account} is not the PDA for the given seeds (expected {derived})")
    return bump


def signer_from_seeds(seeds: list[bytes], program_id: Pubkey) -> Pubkey:
    """Resolve signer seeds (bump included) to the derived authority address."""
    try:
        return Pubkey.create_program_address(seeds, program_id)
    except Exception as e:
        raise InvalidPdaError(f"Signer seeds do not derive a valid PDA: {e}") from e
