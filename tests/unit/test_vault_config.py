"""
test_vault_config.py - Unit tests for VaultConfig and load_config
"""

import json

import pytest
from datetime import timedelta
from decimal import Decimal

from vaultledger import VaultConfig, InvalidValue, load_config


class TestDefaults:

    def test_defaults(self):
        config = VaultConfig()
        assert config.fee_rate_bps == 100
        assert config.swap_fee_bps == 20
        assert config.nav_update_interval == timedelta(days=1)
        assert config.fragmentation_threshold == 10
        assert config.arbitrage_threshold_bps == 50
        assert config.price_tolerance_bps == 10
        assert config.max_settlement_retries == 3
        assert config.atypical_settings() == []

    def test_atypical_settings_reported(self):
        notes = VaultConfig(fee_rate_bps=500, swap_fee_bps=5).atypical_settings()
        assert len(notes) == 2
        assert notes[0].startswith("fee_rate_bps=500")


class TestValidation:

    @pytest.mark.parametrize("kwargs", [
        {'fee_rate_bps': -1},
        {'fee_rate_bps': 10001},
        {'swap_fee_bps': 1.5},
        {'fragmentation_threshold': 1},
        {'arbitrage_threshold_bps': -5},
        {'max_settlement_retries': -1},
        {'nav_update_interval': timedelta(0)},
        {'consolidation_interval': 3600},
        {'valuation_timeout_seconds': 0},
        {'valuation_timeout_seconds': True},
        {'max_arbitrage_trade': Decimal("0")},
        {'auto_rebalance': "yes"},
    ])
    def test_rejects(self, kwargs):
        with pytest.raises(InvalidValue):
            VaultConfig(**kwargs)

    def test_max_trade_admitted_as_decimal(self):
        assert VaultConfig(max_arbitrage_trade=500).max_arbitrage_trade == Decimal("500")


class TestMapping:

    def test_from_mapping_seconds(self):
        config = VaultConfig.from_mapping({'nav_update_interval': 3600, 'max_arbitrage_trade': "250.5"})
        assert config.nav_update_interval == timedelta(hours=1)
        assert config.max_arbitrage_trade == Decimal("250.5")

    def test_unknown_key(self):
        with pytest.raises(InvalidValue, match="unknown"):
            VaultConfig.from_mapping({'fee_rate': 100})

    def test_round_trip(self):
        config = VaultConfig(fee_rate_bps=150, auto_rebalance=True)
        assert VaultConfig.from_mapping(config.to_mapping()) == config


class TestLoadConfig:

    def test_load(self, tmp_path):
        path = tmp_path / "vault.json"
        path.write_text(json.dumps({'fee_rate_bps': 75, 'consolidation_interval': 7200}))
        config = load_config(path)
        assert config.fee_rate_bps == 75
        assert config.consolidation_interval == timedelta(hours=2)

    def test_bad_json(self, tmp_path):
        path = tmp_path / "vault.json"
        path.write_text("{not json")
        with pytest.raises(InvalidValue, match="not valid JSON"):
            load_config(path)

    def test_not_an_object(self, tmp_path):
        path = tmp_path / "vault.json"
        path.write_text("[1, 2]")
        with pytest.raises(InvalidValue, match="JSON object"):
            load_config(str(path))

    def test_invalid_value_in_file(self, tmp_path):
        path = tmp_path / "vault.json"
        path.write_text(json.dumps({'swap_fee_bps': 20000}))
        with pytest.raises(InvalidValue):
            load_config(path)
