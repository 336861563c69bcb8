"""Tests for config administration and market creation."""

from __future__ import annotations

import dataclasses

import pytest
from solders.pubkey import Pubkey  # type: ignore[import-untyped]

from conftest import AMM_PROGRAM_ID, PROGRAM_ID, THRESHOLD
from market_mill.errors import (
    AccountAlreadyExistsError,
    ExclusionListFullError,
    InvalidAmountError,
    InvalidFeeShareError,
    InvalidPdaError,
    UnauthorizedError,
)
from market_mill.program.admin import (
    MAX_REFLECTION_EXCLUSIONS,
    AcceptConfigOwnershipAccounts,
    ConfigAuthorityAccounts,
    CreateConfigAccounts,
    CreateMarketAccounts,
)
from market_mill.program.pda import (
    find_buyback_state_address,
    find_market_address,
    find_reflection_state_address,
)
from market_mill.program.state import BuybackState, Market, MarketStatus, MillConfig, ReflectionState


def _config_accounts(mill, authority: Pubkey | None = None) -> ConfigAuthorityAccounts:
    return ConfigAuthorityAccounts(config=mill.config, authority=authority or mill.authority)


def _market_accounts(mill, base_mint: Pubkey, authority: Pubkey | None = None) -> CreateMarketAccounts:
    market, _ = find_market_address(base_mint, PROGRAM_ID)
    return CreateMarketAccounts(
        config=mill.config,
        market=market,
        buyback_state=find_buyback_state_address(market, PROGRAM_ID)[0],
        reflection_state=find_reflection_state_address(market, PROGRAM_ID)[0],
        base_mint=base_mint,
        creator=Pubkey.new_unique(),
        authority=authority or mill.authority,
    )


# ── create_config ──────────────────────────────────────────────────────


class TestCreateConfig:
    def test_fields_stored(self, mill):
        config = mill.ledger.state(mill.config)
        assert isinstance(config, MillConfig)
        assert config.authority == mill.authority
        assert config.protocol_fee_recipient == mill.fee_recipient
        assert config.migration_threshold_lamports == THRESHOLD
        assert config.cpi_whitelist == [AMM_PROGRAM_ID]

    def test_share_above_100_percent(self, program):
        payer = Pubkey.new_unique()
        with pytest.raises(InvalidFeeShareError):
            program.create_config(
                CreateConfigAccounts(config=Pubkey.new_unique(), payer=payer),
                authority=payer,
                protocol_fee_recipient=payer,
                protocol_fee_share_bps=10_001,
                referral_fee_share_bps=0,
                migration_threshold_lamports=1,
                signers={payer},
            )

    def test_protocol_plus_creator_above_100_percent(self, program):
        payer = Pubkey.new_unique()
        with pytest.raises(InvalidFeeShareError):
            program.create_config(
                CreateConfigAccounts(config=Pubkey.new_unique(), payer=payer),
                authority=payer,
                protocol_fee_recipient=payer,
                protocol_fee_share_bps=6_000,
                referral_fee_share_bps=0,
                creator_fee_share_bps=5_000,
                migration_threshold_lamports=1,
                signers={payer},
            )

    def test_zero_migration_threshold_rejected(self, program):
        payer, config = Pubkey.new_unique(), Pubkey.new_unique()
        with pytest.raises(InvalidAmountError):
            program.create_config(
                CreateConfigAccounts(config=config, payer=payer),
                authority=payer,
                protocol_fee_recipient=payer,
                protocol_fee_share_bps=0,
                referral_fee_share_bps=0,
                migration_threshold_lamports=0,
                signers={payer},
            )
        assert not program.ledger.exists(config)

    def test_config_created_once(self, mill):
        with pytest.raises(AccountAlreadyExistsError):
            mill.program.create_config(
                CreateConfigAccounts(config=mill.config, payer=mill.authority),
                authority=mill.authority,
                protocol_fee_recipient=mill.fee_recipient,
                protocol_fee_share_bps=0,
                referral_fee_share_bps=0,
                migration_threshold_lamports=1,
                signers={mill.authority},
            )


# ── privileged updates ─────────────────────────────────────────────────


class TestConfigUpdates:
    def test_update_whitelist(self, mill):
        other = Pubkey.new_unique()
        mill.program.update_cpi_whitelist(
            _config_accounts(mill), whitelist=[other], max_forwarded_accounts=4, signers={mill.authority}
        )
        config = mill.ledger.state(mill.config)
        assert config.cpi_whitelist == [other]
        assert config.max_forwarded_accounts == 4

    def test_whitelist_requires_authority(self, mill):
        stranger = Pubkey.new_unique()
        with pytest.raises(UnauthorizedError):
            mill.program.update_cpi_whitelist(
                _config_accounts(mill, stranger),
                whitelist=[],
                max_forwarded_accounts=0,
                signers={stranger},
            )
        assert mill.ledger.state(mill.config).cpi_whitelist == [AMM_PROGRAM_ID]

    def test_account_cap_fits_u8(self, mill):
        with pytest.raises(ValueError):
            mill.program.update_cpi_whitelist(
                _config_accounts(mill), whitelist=[], max_forwarded_accounts=256, signers={mill.authority}
            )

    def test_reflection_exclusion_added_once_and_removed(self, mill):
        vault = Pubkey.new_unique()
        for _ in range(2):
            mill.program.update_reflection_exclusion(
                _config_accounts(mill), add=True, address=vault, signers={mill.authority}
            )
        assert mill.ledger.state(mill.config).reflection_exclusions == [vault]

        mill.program.update_reflection_exclusion(
            _config_accounts(mill), add=False, address=vault, signers={mill.authority}
        )
        assert mill.ledger.state(mill.config).reflection_exclusions == []

    def test_reflection_exclusion_requires_authority(self, mill):
        stranger = Pubkey.new_unique()
        with pytest.raises(UnauthorizedError):
            mill.program.update_reflection_exclusion(
                _config_accounts(mill, stranger), add=True, address=stranger, signers={stranger}
            )
        assert mill.ledger.state(mill.config).reflection_exclusions == []

    def test_reflection_exclusion_list_capacity(self, mill):
        full = [Pubkey.new_unique() for _ in range(MAX_REFLECTION_EXCLUSIONS)]
        mill.ledger.state(mill.config).reflection_exclusions = list(full)

        with pytest.raises(ExclusionListFullError):
            mill.program.update_reflection_exclusion(
                _config_accounts(mill), add=True, address=Pubkey.new_unique(), signers={mill.authority}
            )
        assert mill.ledger.state(mill.config).reflection_exclusions == full

    def test_update_fee_shares(self, mill):
        mill.program.update_fee_shares(
            _config_accounts(mill),
            protocol_fee_share_bps=200,
            referral_fee_share_bps=5_000,
            creator_fee_share_bps=0,
            signers={mill.authority},
        )
        config = mill.ledger.state(mill.config)
        assert (config.protocol_fee_share_bps, config.referral_fee_share_bps) == (200, 5_000)

    def test_update_fee_shares_rejects_bad_bps(self, mill):
        with pytest.raises(InvalidFeeShareError):
            mill.program.update_fee_shares(
                _config_accounts(mill),
                protocol_fee_share_bps=100,
                referral_fee_share_bps=10_001,
                creator_fee_share_bps=0,
                signers={mill.authority},
            )

    def test_update_protocol_fee_recipient(self, mill):
        recipient = Pubkey.new_unique()
        mill.program.update_protocol_fee_recipient(
            _config_accounts(mill), protocol_fee_recipient=recipient, signers={mill.authority}
        )
        assert mill.ledger.state(mill.config).protocol_fee_recipient == recipient


# ── ownership handover ─────────────────────────────────────────────────


class TestConfigOwnership:
    def test_two_step_transfer(self, mill):
        successor = Pubkey.new_unique()
        mill.program.transfer_config_ownership(
            _config_accounts(mill), new_authority=successor, signers={mill.authority}
        )
        assert mill.ledger.state(mill.config).authority == mill.authority

        event = mill.program.accept_config_ownership(
            AcceptConfigOwnershipAccounts(config=mill.config, pending_authority=successor),
            signers={successor},
        )

        config = mill.ledger.state(mill.config)
        assert config.authority == successor
        assert config.pending_authority is None
        assert event.previous_authority == mill.authority

    def test_accept_by_someone_else(self, mill):
        successor, stranger = Pubkey.new_unique(), Pubkey.new_unique()
        mill.program.transfer_config_ownership(
            _config_accounts(mill), new_authority=successor, signers={mill.authority}
        )
        with pytest.raises(UnauthorizedError):
            mill.program.accept_config_ownership(
                AcceptConfigOwnershipAccounts(config=mill.config, pending_authority=stranger),
                signers={stranger},
            )

    def test_cancel_pending_transfer(self, mill):
        successor = Pubkey.new_unique()
        mill.program.transfer_config_ownership(
            _config_accounts(mill), new_authority=successor, signers={mill.authority}
        )
        mill.program.transfer_config_ownership(
            _config_accounts(mill), new_authority=None, signers={mill.authority}
        )
        with pytest.raises(UnauthorizedError):
            mill.program.accept_config_ownership(
                AcceptConfigOwnershipAccounts(config=mill.config, pending_authority=successor),
                signers={successor},
            )

    def test_old_authority_loses_force(self, mill):
        successor = Pubkey.new_unique()
        mill.program.transfer_config_ownership(
            _config_accounts(mill), new_authority=successor, signers={mill.authority}
        )
        mill.program.accept_config_ownership(
            AcceptConfigOwnershipAccounts(config=mill.config, pending_authority=successor),
            signers={successor},
        )
        with pytest.raises(UnauthorizedError):
            mill.migrate(force=True)
        assert mill.migrate(force=True, authority=successor).forced is True


# ── create_market ──────────────────────────────────────────────────────


class TestCreateMarket:
    def test_creates_market_and_state_accounts(self, mill):
        accounts = _market_accounts(mill, Pubkey.new_unique())
        mill.program.create_market(accounts, migration_threshold_lamports=42, signers={mill.authority})

        market = mill.ledger.state(accounts.market)
        assert isinstance(market, Market)
        assert market.status == MarketStatus.ACTIVE
        assert market.creator == accounts.creator
        assert market.migration_threshold_lamports == 42
        assert isinstance(mill.ledger.state(accounts.buyback_state), BuybackState)
        assert isinstance(mill.ledger.state(accounts.reflection_state), ReflectionState)

    def test_market_pda_checked(self, mill):
        accounts = _market_accounts(mill, Pubkey.new_unique())
        bad = dataclasses.replace(accounts, market=Pubkey.new_unique())
        with pytest.raises(InvalidPdaError):
            mill.program.create_market(bad, signers={mill.authority})

    def test_only_authority_creates_markets(self, mill):
        stranger = Pubkey.new_unique()
        accounts = _market_accounts(mill, Pubkey.new_unique(), authority=stranger)
        with pytest.raises(UnauthorizedError):
            mill.program.create_market(accounts, signers={stranger})
        assert not mill.ledger.exists(accounts.market)

    def test_market_per_mint_is_unique(self, mill):
        accounts = _market_accounts(mill, mill.base_mint)
        with pytest.raises(AccountAlreadyExistsError):
            mill.program.create_market(accounts, signers={mill.authority})
