"""Shared test fixtures: a ledger, a runtime with a fake AMM, and a ready market."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

import pytest
from solders.instruction import AccountMeta  # type: ignore[import-untyped]
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from market_mill.program.admin import (
    ConfigAuthorityAccounts,
    CreateConfigAccounts,
    CreateMarketAccounts,
)
from market_mill.program.buyback import PerformBuybackAccounts
from market_mill.program.ledger import Ledger
from market_mill.program.migration import PerformMigrationAccounts
from market_mill.program.pda import (
    find_buyback_state_address,
    find_market_address,
    find_reflection_state_address,
)
from market_mill.program.program import MarketMillProgram
from market_mill.program.runtime import CpiContext, Runtime

PROGRAM_ID = Pubkey.new_unique()
AMM_PROGRAM_ID = Pubkey.new_unique()

THRESHOLD = 1_000
CREATOR_BONUS = 100
TREASURY = 10_000

# Fake AMM opcodes (first data byte)
AMM_CREATE_POOL = 1
AMM_BURN_LP = 2
AMM_SWAP = 3
AMM_FAIL = 0xFF


@dataclass
class FakePool:
    lp_supply: int
    burned: bool = False


class FakeAmm:
    """Minimal stand-in for a third-party AMM.

    Accounts: [authority (signer, writable), pool (writable)].
    CREATE moves lamports from the authority into a new pool account, BURN
    marks the LP burned, SWAP moves lamports into an existing pool, FAIL
    always raises.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[int, list[AccountMeta]]] = []

    def process(self, ctx: CpiContext, data: bytes) -> None:
        opcode = data[0]
        self.calls.append((opcode, list(ctx.accounts)))
        if opcode == AMM_FAIL:
            raise RuntimeError("amm exploded")

        authority, pool = ctx.accounts[0].pubkey, ctx.accounts[1].pubkey
        ctx.require_signer(authority)
        if opcode == AMM_CREATE_POOL:
            (amount,) = struct.unpack_from("<Q", data, 1)
            ctx.create(pool, state=FakePool(lp_supply=amount))
            ctx.transfer(authority, pool, amount)
        elif opcode == AMM_BURN_LP:
            ctx.state_mut(pool, FakePool).burned = True
        elif opcode == AMM_SWAP:
            (amount,) = struct.unpack_from("<Q", data, 1)
            ctx.transfer(authority, pool, amount)
        else:
            raise ValueError(f"unknown opcode {opcode}")


def create_pool_ix(amount: int = 500) -> bytes:
    return bytes([AMM_CREATE_POOL]) + struct.pack("<Q", amount)


def swap_ix(amount: int) -> bytes:
    return bytes([AMM_SWAP]) + struct.pack("<Q", amount)


BURN_LP_IX = bytes([AMM_BURN_LP])
FAIL_IX = bytes([AMM_FAIL])


@dataclass
class Mill:
    """One config and one market, with keys and shortcuts for the common calls."""

    program: MarketMillProgram
    amm: FakeAmm
    authority: Pubkey
    fee_recipient: Pubkey
    config: Pubkey
    base_mint: Pubkey
    creator: Pubkey
    market: Pubkey
    buyback_state: Pubkey
    reflection_state: Pubkey
    pool: Pubkey = field(default_factory=Pubkey.new_unique)

    @property
    def ledger(self) -> Ledger:
        return self.program.ledger

    def market_state(self):
        return self.ledger.state(self.market)

    def buyback_accounts(self, payer: Pubkey | None = None, **overrides) -> PerformBuybackAccounts:
        fields_ = dict(
            market=self.market,
            config=self.config,
            reflection_state=self.reflection_state,
            buyback_state=self.buyback_state,
            payer=payer or self.authority,
        )
        fields_.update(overrides)
        return PerformBuybackAccounts(**fields_)

    def buyback(self, lamports: int, **kwargs):
        signers = kwargs.pop("signers", {self.authority})
        return self.program.perform_buyback(
            self.buyback_accounts(), lamports=lamports, signers=signers, **kwargs
        )

    def migration_accounts(self, authority: Pubkey | None = None, **overrides) -> PerformMigrationAccounts:
        fields_ = dict(
            market=self.market,
            config=self.config,
            buyback_state=self.buyback_state,
            creator=self.creator,
            authority=authority or self.authority,
            external_program=AMM_PROGRAM_ID,
        )
        fields_.update(overrides)
        return PerformMigrationAccounts(**fields_)

    def lp_accounts(self) -> list[AccountMeta]:
        return [AccountMeta(self.market, True, True), AccountMeta(self.pool, False, True)]

    def migrate(
        self,
        *,
        force: bool = False,
        create_lp_ix: bytes | None = None,
        burn_lp_ix: bytes | None = None,
        authority: Pubkey | None = None,
        remaining_accounts: list[AccountMeta] | None = None,
        **overrides,
    ):
        signer = authority or self.authority
        return self.program.perform_migration(
            self.migration_accounts(authority=signer, **overrides),
            force=force,
            create_lp_ix=create_pool_ix() if create_lp_ix is None else create_lp_ix,
            burn_lp_ix=burn_lp_ix,
            remaining_accounts=self.lp_accounts() if remaining_accounts is None else remaining_accounts,
            signers={signer},
        )


@pytest.fixture
def ledger() -> Ledger:
    return Ledger()


@pytest.fixture
def runtime(ledger: Ledger) -> Runtime:
    return Runtime(ledger)


@pytest.fixture
def amm(runtime: Runtime) -> FakeAmm:
    fake = FakeAmm()
    runtime.register(AMM_PROGRAM_ID, fake)
    return fake


@pytest.fixture
def program(runtime: Runtime) -> MarketMillProgram:
    return MarketMillProgram(PROGRAM_ID, runtime)


@pytest.fixture
def mill(program: MarketMillProgram, amm: FakeAmm) -> Mill:
    """Config with the fake AMM whitelisted and one funded market."""
    authority = Pubkey.new_unique()
    fee_recipient = Pubkey.new_unique()
    config = Pubkey.new_unique()
    base_mint = Pubkey.new_unique()
    creator = Pubkey.new_unique()

    program.create_config(
        CreateConfigAccounts(config=config, payer=authority),
        authority=authority,
        protocol_fee_recipient=fee_recipient,
        protocol_fee_share_bps=100,
        referral_fee_share_bps=2_000,
        creator_fee_share_bps=50,
        migration_threshold_lamports=THRESHOLD,
        creator_bonus_lamports=CREATOR_BONUS,
        signers={authority},
    )
    program.update_cpi_whitelist(
        ConfigAuthorityAccounts(config=config, authority=authority),
        whitelist=[AMM_PROGRAM_ID],
        max_forwarded_accounts=8,
        signers={authority},
    )

    market, _ = find_market_address(base_mint, PROGRAM_ID)
    buyback_state, _ = find_buyback_state_address(market, PROGRAM_ID)
    reflection_state, _ = find_reflection_state_address(market, PROGRAM_ID)
    program.create_market(
        CreateMarketAccounts(
            config=config,
            market=market,
            buyback_state=buyback_state,
            reflection_state=reflection_state,
            base_mint=base_mint,
            creator=creator,
            authority=authority,
        ),
        signers={authority},
    )
    program.ledger.fund(market, TREASURY)
    program.ledger.events.clear()

    return Mill(
        program=program,
        amm=amm,
        authority=authority,
        fee_recipient=fee_recipient,
        config=config,
        base_mint=base_mint,
        creator=creator,
        market=market,
        buyback_state=buyback_state,
        reflection_state=reflection_state,
    )


@pytest.fixture
def eligible_mill(mill: Mill) -> Mill:
    mill.buyback(THRESHOLD)
    mill.ledger.events.clear()
    return mill
