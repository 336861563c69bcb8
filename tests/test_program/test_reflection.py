"""Tests for the reflection pool: default policy, settlement, holder claims."""

from __future__ import annotations

import pytest
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from conftest import AMM_PROGRAM_ID, swap_ix
from market_mill.errors import (
    InvalidAmountError,
    InvalidConfigAccountError,
    InvalidMarketStateError,
    MissingSignatureError,
    NothingToClaimError,
    ReflectionOverCreditError,
    UnauthorizedError,
)
from market_mill.program.admin import ConfigAuthorityAccounts
from market_mill.program.reflection import (
    ClaimReflectionAccounts,
    ProportionalReflectionPolicy,
    SettleReflectionAccounts,
)
from market_mill.program.state import Market


def _exclude(mill, address: Pubkey, add: bool = True) -> None:
    mill.program.update_reflection_exclusion(
        ConfigAuthorityAccounts(config=mill.config, authority=mill.authority),
        add=add,
        address=address,
        signers={mill.authority},
    )


def _market_with_holders(**balances: int) -> tuple[Market, dict[str, Pubkey]]:
    market = Market(
        config=Pubkey.new_unique(), base_mint=Pubkey.new_unique(), creator=Pubkey.new_unique(), bump=255
    )
    keys = {}
    for name, amount in balances.items():
        keys[name] = Pubkey.new_unique()
        market.mint_to(keys[name], amount)
    return market, keys


# ── Default policy ─────────────────────────────────────────────────────


class TestProportionalPolicy:
    def test_split_by_balance(self):
        market, keys = _market_with_holders(a=1, b=3)
        alloc = ProportionalReflectionPolicy().allocate(market, 1_000)
        assert alloc.pool_amount == 1_000
        assert alloc.credits == {keys["a"]: 250, keys["b"]: 750}

    def test_rounding_dust_stays_unassigned(self):
        market, _ = _market_with_holders(a=1, b=1, c=1)
        alloc = ProportionalReflectionPolicy().allocate(market, 100)
        assert alloc.pool_amount == 100
        assert sum(alloc.credits.values()) == 99

    def test_partial_share(self):
        market, keys = _market_with_holders(a=1)
        alloc = ProportionalReflectionPolicy(share_bps=2_500).allocate(market, 1_000)
        assert alloc.pool_amount == 250
        assert alloc.credits == {keys["a"]: 250}

    def test_no_holders_pools_nothing(self):
        market, _ = _market_with_holders()
        alloc = ProportionalReflectionPolicy().allocate(market, 1_000)
        assert alloc.pool_amount == 0
        assert alloc.credits == {}

    def test_zero_balances_ignored(self):
        market, keys = _market_with_holders(a=5)
        market.holder_balances[Pubkey.new_unique()] = 0
        alloc = ProportionalReflectionPolicy().allocate(market, 10)
        assert alloc.credits == {keys["a"]: 10}

    def test_excluded_holders_carry_no_weight(self):
        market, keys = _market_with_holders(pool=9, a=1)
        alloc = ProportionalReflectionPolicy().allocate(market, 1_000, excluded=frozenset({keys["pool"]}))
        assert alloc.credits == {keys["a"]: 1_000}

    def test_only_excluded_holders_pools_nothing(self):
        market, keys = _market_with_holders(pool=9)
        alloc = ProportionalReflectionPolicy().allocate(market, 1_000, excluded=frozenset(keys.values()))
        assert alloc.pool_amount == 0

    def test_share_out_of_range(self):
        with pytest.raises(ValueError):
            ProportionalReflectionPolicy(share_bps=10_001)


# ── Claims ─────────────────────────────────────────────────────────────


class TestClaimReflection:
    def _claim(self, mill, owner: Pubkey, signers=None):
        return mill.program.claim_reflection(
            ClaimReflectionAccounts(
                market=mill.market,
                config=mill.config,
                reflection_state=mill.reflection_state,
                owner=owner,
            ),
            signers={owner} if signers is None else signers,
        )

    def test_claim_pays_and_zeroes(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        mill.buyback(400)

        event = self._claim(mill, holder)

        assert event.lamports == 400
        assert mill.ledger.balance(holder) == 400
        reflection = mill.ledger.state(mill.reflection_state)
        assert reflection.claimable.get(holder, 0) == 0
        assert reflection.total_claimed == 400
        assert reflection.outstanding <= reflection.total_pool - reflection.total_claimed

    def test_second_claim_has_nothing(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        mill.buyback(400)
        self._claim(mill, holder)

        with pytest.raises(NothingToClaimError):
            self._claim(mill, holder)
        assert mill.ledger.balance(holder) == 400

    def test_non_holder_has_nothing(self, mill):
        with pytest.raises(NothingToClaimError):
            self._claim(mill, Pubkey.new_unique())

    def test_claim_requires_owner_signature(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        mill.buyback(400)
        with pytest.raises(MissingSignatureError):
            self._claim(mill, holder, signers=set())

    def test_excluded_holder_cannot_claim(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        mill.buyback(400)
        _exclude(mill, holder)

        with pytest.raises(UnauthorizedError):
            self._claim(mill, holder)
        assert mill.ledger.balance(holder) == 0
        assert mill.ledger.state(mill.reflection_state).claimable[holder] == 400

    def test_excluded_holder_gets_no_share_of_buyback(self, mill):
        vault, holder = Pubkey.new_unique(), Pubkey.new_unique()
        mill.market_state().mint_to(vault, 90)
        mill.market_state().mint_to(holder, 10)
        _exclude(mill, vault)

        mill.buyback(400)

        assert mill.ledger.state(mill.reflection_state).claimable == {holder: 400}
        assert self._claim(mill, holder).lamports == 400

    def test_removed_exclusion_restores_claims(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        mill.buyback(400)
        _exclude(mill, holder)
        _exclude(mill, holder, add=False)

        assert self._claim(mill, holder).lamports == 400

    def test_claim_with_wrong_config(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        mill.buyback(400)
        with pytest.raises(InvalidConfigAccountError):
            mill.program.claim_reflection(
                ClaimReflectionAccounts(
                    market=mill.market,
                    config=Pubkey.new_unique(),
                    reflection_state=mill.reflection_state,
                    owner=holder,
                ),
                signers={holder},
            )


# ── Settlement ─────────────────────────────────────────────────────────


class TestSettleReflection:
    def _settle(self, mill, amount: int, authority: Pubkey | None = None):
        authority = authority or mill.authority
        return mill.program.settle_reflection(
            SettleReflectionAccounts(
                market=mill.market,
                config=mill.config,
                reflection_state=mill.reflection_state,
                buyback_state=mill.buyback_state,
                authority=authority,
            ),
            added_lamports=amount,
            signers={authority},
        )

    def _swap_buyback(self, mill, lamports: int):
        mill.program.perform_buyback(
            mill.buyback_accounts(external_program=AMM_PROGRAM_ID),
            lamports=lamports,
            swap_ix=swap_ix(lamports),
            remaining_accounts=mill.lp_accounts(),
            signers={mill.authority},
        )

    def test_settle_after_swap_buyback(self, mill):
        holder = Pubkey.new_unique()
        mill.market_state().mint_to(holder, 10)
        self._swap_buyback(mill, 500)
        mill.ledger.fund(mill.authority, 1_000)

        event = self._settle(mill, 200)

        assert event.added_lamports == 200
        assert mill.ledger.state(mill.reflection_state).claimable == {holder: 200}
        assert mill.ledger.balance(mill.reflection_state) == 200
        assert mill.ledger.balance(mill.authority) == 800
        assert mill.ledger.state(mill.buyback_state).total_reflected_lamports == 200

    def test_settle_bounded_by_buyback_total(self, mill):
        mill.market_state().mint_to(Pubkey.new_unique(), 10)
        self._swap_buyback(mill, 100)
        mill.ledger.fund(mill.authority, 1_000)

        with pytest.raises(ReflectionOverCreditError):
            self._settle(mill, 101)
        assert mill.ledger.balance(mill.authority) == 1_000

    def test_settle_requires_config_authority(self, mill):
        stranger = Pubkey.new_unique()
        mill.ledger.fund(stranger, 1_000)
        with pytest.raises(UnauthorizedError):
            self._settle(mill, 10, authority=stranger)

    def test_settle_positive_amount(self, mill):
        with pytest.raises(InvalidAmountError):
            self._settle(mill, 0)

    def test_settle_without_holders_rejected(self, mill):
        self._swap_buyback(mill, 500)
        mill.ledger.fund(mill.authority, 1_000)

        with pytest.raises(InvalidMarketStateError):
            self._settle(mill, 200)

        assert mill.ledger.balance(mill.authority) == 1_000
        assert mill.ledger.balance(mill.reflection_state) == 0
        assert mill.ledger.state(mill.buyback_state).total_reflected_lamports == 0

    def test_settle_with_only_excluded_holders_rejected(self, mill):
        vault = Pubkey.new_unique()
        mill.market_state().mint_to(vault, 10)
        _exclude(mill, vault)
        self._swap_buyback(mill, 500)
        mill.ledger.fund(mill.authority, 1_000)

        with pytest.raises(InvalidMarketStateError):
            self._settle(mill, 200)
        assert mill.ledger.balance(mill.authority) == 1_000
