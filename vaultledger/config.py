"""
config.py - Validated vault configuration

All tunables of the engine live in one frozen VaultConfig. Values are
validated when the config is built, so a bad file fails at load time and
never halfway through a settlement.

Typical ranges (outside them the config still loads; atypical_settings()
lists the deviations):
    fee_rate_bps   50 - 200
    swap_fee_bps   10 - 30
"""

from __future__ import annotations
from dataclasses import dataclass, fields
from datetime import timedelta
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Mapping, Union
import json

from .core import InvalidValue
from .fixed_point import to_decimal


TYPICAL_FEE_RATE_BPS = (50, 200)
TYPICAL_SWAP_FEE_BPS = (10, 30)

# Accepted price deviation of an operator-supplied settlement amount.
DEFAULT_PRICE_TOLERANCE_BPS = 10


@dataclass(frozen=True, slots=True)
class VaultConfig:
    """
    Engine configuration.

    Attributes:
        fee_rate_bps: Annual management fee charged by the NAV oracle
        swap_fee_bps: Pool swap fee
        nav_update_interval: Oracle cadence
        fragmentation_threshold: Records per owner above which consolidation runs
        arbitrage_threshold_bps: No-trade band around NAV for the market maker
        price_tolerance_bps: Band for operator-supplied settlement amounts
        max_settlement_retries: Retries after a ConcurrencyConflict
        valuation_timeout_seconds: Bound on one external valuation fetch
        max_arbitrage_trade: Cap on one arbitrage leg (asset units)
        consolidation_interval: Consolidation sweep cadence
        auto_rebalance: Re-anchor the pool to NAV after each arbitrage trade
    """
    fee_rate_bps: int = 100
    swap_fee_bps: int = 20
    nav_update_interval: timedelta = timedelta(days=1)
    fragmentation_threshold: int = 10
    arbitrage_threshold_bps: int = 50
    price_tolerance_bps: int = DEFAULT_PRICE_TOLERANCE_BPS
    max_settlement_retries: int = 3
    valuation_timeout_seconds: float = 5.0
    max_arbitrage_trade: Decimal = Decimal("1000000")
    consolidation_interval: timedelta = timedelta(days=1)
    auto_rebalance: bool = False

    def __post_init__(self):
        for name in ('fee_rate_bps', 'swap_fee_bps', 'price_tolerance_bps'):
            value = getattr(self, name)
            _require_int(value, name)
            if not 0 <= value <= 10000:
                raise InvalidValue(f"{name} must be in [0, 10000], got {value}")
        _require_int(self.arbitrage_threshold_bps, 'arbitrage_threshold_bps')
        if self.arbitrage_threshold_bps < 0:
            raise InvalidValue(f"arbitrage_threshold_bps must be >= 0, got {self.arbitrage_threshold_bps}")
        _require_int(self.fragmentation_threshold, 'fragmentation_threshold')
        if self.fragmentation_threshold < 2:
            raise InvalidValue(f"fragmentation_threshold must be >= 2, got {self.fragmentation_threshold}")
        _require_int(self.max_settlement_retries, 'max_settlement_retries')
        if self.max_settlement_retries < 0:
            raise InvalidValue(f"max_settlement_retries must be >= 0, got {self.max_settlement_retries}")
        for name in ('nav_update_interval', 'consolidation_interval'):
            value = getattr(self, name)
            if not isinstance(value, timedelta) or value <= timedelta(0):
                raise InvalidValue(f"{name} must be a positive timedelta, got {value!r}")
        if isinstance(self.valuation_timeout_seconds, bool) \
                or not isinstance(self.valuation_timeout_seconds, (int, float)) \
                or self.valuation_timeout_seconds <= 0:
            raise InvalidValue(
                f"valuation_timeout_seconds must be positive, got {self.valuation_timeout_seconds!r}"
            )
        trade = to_decimal(self.max_arbitrage_trade, "max_arbitrage_trade")
        if trade <= 0:
            raise InvalidValue(f"max_arbitrage_trade must be positive, got {trade}")
        object.__setattr__(self, 'max_arbitrage_trade', trade)
        if not isinstance(self.auto_rebalance, bool):
            raise InvalidValue(f"auto_rebalance must be a bool, got {self.auto_rebalance!r}")

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> VaultConfig:
        """
        Build a config from plain values (as found in JSON).

        Intervals are given in seconds, max_arbitrage_trade as a string or
        number. Unknown keys are rejected.

        Raises:
            InvalidValue: unknown key or invalid value
        """
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise InvalidValue(f"unknown configuration keys: {unknown}")
        kwargs: Dict[str, Any] = dict(data)
        for name in ('nav_update_interval', 'consolidation_interval'):
            if name in kwargs and not isinstance(kwargs[name], timedelta):
                seconds = kwargs[name]
                if isinstance(seconds, bool) or not isinstance(seconds, (int, float)):
                    raise InvalidValue(f"{name} must be a number of seconds, got {seconds!r}")
                kwargs[name] = timedelta(seconds=seconds)
        if 'max_arbitrage_trade' in kwargs:
            kwargs['max_arbitrage_trade'] = to_decimal(kwargs['max_arbitrage_trade'], 'max_arbitrage_trade')
        return cls(**kwargs)

    def to_mapping(self) -> Dict[str, Any]:
        """Inverse of from_mapping; JSON-serializable."""
        return {
            'fee_rate_bps': self.fee_rate_bps,
            'swap_fee_bps': self.swap_fee_bps,
            'nav_update_interval': self.nav_update_interval.total_seconds(),
            'fragmentation_threshold': self.fragmentation_threshold,
            'arbitrage_threshold_bps': self.arbitrage_threshold_bps,
            'price_tolerance_bps': self.price_tolerance_bps,
            'max_settlement_retries': self.max_settlement_retries,
            'valuation_timeout_seconds': self.valuation_timeout_seconds,
            'max_arbitrage_trade': str(self.max_arbitrage_trade),
            'consolidation_interval': self.consolidation_interval.total_seconds(),
            'auto_rebalance': self.auto_rebalance,
        }

    def atypical_settings(self) -> List[str]:
        """Describe every value outside its typical range."""
        notes = []
        low, high = TYPICAL_FEE_RATE_BPS
        if not low <= self.fee_rate_bps <= high:
            notes.append(f"fee_rate_bps={self.fee_rate_bps} outside typical [{low}, {high}]")
        low, high = TYPICAL_SWAP_FEE_BPS
        if not low <= self.swap_fee_bps <= high:
            notes.append(f"swap_fee_bps={self.swap_fee_bps} outside typical [{low}, {high}]")
        return notes


def _require_int(value: Any, name: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidValue(f"{name} must be an integer, got {value!r}")


def load_config(path: Union[str, Path]) -> VaultConfig:
    """
    Load a VaultConfig from a JSON object file.

    Raises:
        InvalidValue: malformed JSON or invalid settings
    """
    try:
        data = json.loads(Path(path).read_text())
    except json.JSONDecodeError as exc:
        raise InvalidValue(f"config {path} is not valid JSON: {exc}") from None
    if not isinstance(data, dict):
        raise InvalidValue(f"config {path} must hold a JSON object")
    return VaultConfig.from_mapping(data)
