"""
conftest.py - Shared pytest fixtures for vault tests

Provides common fixtures used across unit, functional and conformance tests:
- Empty and initialized ledgers
- Configuration and settlement coordinator
- A vault with an existing depositor
- A vault with a seeded liquidity pool (10000 shares / 10000 asset, 20 bps)
"""

import pytest
from datetime import timedelta
from decimal import Decimal

from vaultledger import (
    Ledger, VaultConfig, SettlementCoordinator,
    compute_vault_initialization, compute_pool_creation,
)

from tests.helpers import OPERATOR, T0, deposit, fund


# =============================================================================
# BASIC FIXTURES
# =============================================================================

@pytest.fixture
def config():
    """Default configuration (fee 100 bps, swap fee 20 bps, tolerance 10 bps)."""
    return VaultConfig()


@pytest.fixture
def ledger():
    """Empty ledger at T0, quiet, test mode."""
    return Ledger("test", initial_time=T0, verbose=False, test_mode=True)


@pytest.fixture
def vault_ledger(ledger, config):
    """Ledger with an initialized vault: nav=0, total_shares=0."""
    ledger.execute(compute_vault_initialization(ledger, OPERATOR, config.fee_rate_bps))
    return ledger


@pytest.fixture
def coordinator(vault_ledger, config):
    return SettlementCoordinator(vault_ledger, config, OPERATOR)


@pytest.fixture
def funded_vault(vault_ledger, coordinator):
    """Vault where alice has deposited 1000 at price 1 (nav=1000, shares=1000)."""
    fund(vault_ledger, "alice", 5000)
    deposit(vault_ledger, coordinator, "alice", 1000)
    return vault_ledger


@pytest.fixture
def pool_vault(vault_ledger, coordinator):
    """
    Vault with a liquidity pool seeded by the operator.

    The operator deposits 20000, then seeds the pool with 10000 shares and
    10000 asset units at a 20 bps swap fee. Ledger time is one hour after T0.
    """
    fund(vault_ledger, OPERATOR, 50000)
    deposit(vault_ledger, coordinator, OPERATOR, 20000)
    vault_ledger.advance_time(T0 + timedelta(hours=1))
    vault_ledger.execute(compute_pool_creation(
        vault_ledger, OPERATOR, Decimal("10000"), Decimal("10000"), 20,
    ))
    return vault_ledger
