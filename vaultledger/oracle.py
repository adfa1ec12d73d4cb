"""
oracle.py - NAV oracle: external valuation, fee accrual, UpdateNAV

Each cycle:
    (a) fetch the gross valuation from the external source (bounded timeout)
    (b) seconds elapsed since VaultState.last_update
    (c) accrued_fee = gross_nav * fee_rate_bps / 10000 * seconds / SECONDS_PER_YEAR,
        capped at gross_nav
    (d) net_nav     = gross_nav - accrued_fee
    (e) UpdateNAV(net_nav, now)

A source that fails, times out or answers nothing skips the cycle and the
last valid price stays in force. The oracle never posts a zero or default
NAV in place of a missing one.

Classes:
- ValuationSource: Protocol for external valuation feeds
- StaticValuationSource: Fixed valuation, updatable by hand
- TimeSeriesValuationSource: Valuation path, most recent at or before a time
- NavOracle: Runs cycles against a Ledger
"""

from __future__ import annotations
from bisect import bisect_right
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Protocol, Tuple, Union, runtime_checkable

from .config import VaultConfig
from .core import (
    LedgerView, PendingTransaction,
    InvalidState, StaleUpdate, ValuationUnavailable, InvalidValue,
)
from .fixed_point import (
    ASSET_DECIMAL_PLACES, BPS_DENOMINATOR, ZERO, quantize_amount, share_price, to_decimal,
)
from .vault import compute_nav_update


SECONDS_PER_YEAR = Decimal(365 * 24 * 60 * 60)


@dataclass(frozen=True, slots=True)
class Valuation:
    """One answer of the external feed: gross assets and reported supply."""
    total_assets: Decimal
    total_supply: Optional[Decimal] = None

    def __post_init__(self):
        object.__setattr__(self, 'total_assets', to_decimal(self.total_assets, "total_assets"))
        if self.total_supply is not None:
            object.__setattr__(self, 'total_supply', to_decimal(self.total_supply, "total_supply"))
        if self.total_assets < 0:
            raise InvalidValue(f"total_assets must be >= 0, got {self.total_assets}")


@runtime_checkable
class ValuationSource(Protocol):
    """
    Read-only external valuation feed.

    get_valuation() may block, raise, or return None; the oracle treats all
    three as "unavailable" for the cycle.
    """

    def get_valuation(self, timestamp: datetime) -> Optional[Valuation]:
        ...


class StaticValuationSource:
    """Valuation source with a fixed answer (timestamp is ignored)."""

    def __init__(self, total_assets: Decimal, total_supply: Optional[Decimal] = None):
        self.valuation = Valuation(total_assets, total_supply)

    def get_valuation(self, timestamp: datetime) -> Optional[Valuation]:
        return self.valuation

    def update(self, total_assets: Decimal, total_supply: Optional[Decimal] = None) -> None:
        self.valuation = Valuation(total_assets, total_supply)

    def __repr__(self):
        return f"StaticValuationSource({self.valuation.total_assets})"


class TimeSeriesValuationSource:
    """
    Valuation source backed by a path of observations.

    Returns the most recent observation at or before the requested time,
    or None before the first observation.

    Example:
        source = TimeSeriesValuationSource([(t0, Decimal("1000")), (t1, Decimal("1010"))])
        source.get_valuation(t1 + timedelta(hours=1)).total_assets  # 1010
    """

    def __init__(self, path: Optional[List[Tuple[datetime, Union[Decimal, Valuation]]]] = None):
        self.history: List[Tuple[datetime, Valuation]] = []
        for timestamp, value in path or ():
            self.add_valuation(timestamp, value)

    def add_valuation(self, timestamp: datetime, value: Union[Decimal, Valuation]) -> None:
        valuation = value if isinstance(value, Valuation) else Valuation(value)
        self.history.append((timestamp, valuation))
        self.history.sort(key=lambda x: x[0])

    def get_valuation(self, timestamp: datetime) -> Optional[Valuation]:
        timestamps = [ts for ts, _ in self.history]
        idx = bisect_right(timestamps, timestamp)
        if idx == 0:
            return None
        return self.history[idx - 1][1]

    def timestamps(self) -> List[datetime]:
        return [ts for ts, _ in self.history]

    def __repr__(self):
        return f"TimeSeriesValuationSource({len(self.history)} observations)"


# ============================================================================
# PURE FUNCTIONS
# ============================================================================

def elapsed_seconds(start: datetime, end: datetime) -> Decimal:
    """Exact seconds from start to end (microsecond resolution); never negative."""
    delta = end - start
    if delta <= timedelta(0):
        return ZERO
    return Decimal(delta.days * 86400 + delta.seconds) + Decimal(delta.microseconds).scaleb(-6)


def year_fraction(start: datetime, end: datetime) -> Decimal:
    """Elapsed time as a fraction of a 365-day year; never negative."""
    return elapsed_seconds(start, end) / SECONDS_PER_YEAR


def compute_accrued_fee(gross_nav: Decimal, fee_rate_bps: int, seconds: Decimal) -> Decimal:
    """
    gross_nav * fee_rate_bps / 10000 * seconds / SECONDS_PER_YEAR, toward zero.

    The whole product is divided once, as an integer division in asset
    units, so a period that divides exactly accrues the exact fee.
    """
    seconds = to_decimal(seconds, "seconds")
    if seconds <= 0 or fee_rate_bps == 0:
        return ZERO
    unit = Decimal(1).scaleb(ASSET_DECIMAL_PLACES)
    numerator = to_decimal(gross_nav, "gross_nav") * fee_rate_bps * seconds * unit
    units = numerator // (BPS_DENOMINATOR * SECONDS_PER_YEAR)
    return quantize_amount(units / unit)


def compute_net_nav(
    gross_nav: Decimal,
    fee_rate_bps: int,
    last_update: datetime,
    now: datetime,
) -> Tuple[Decimal, Decimal]:
    """
    Returns:
        (net_nav, accrued_fee)

    The fee never exceeds gross_nav, so net_nav is never negative.
    """
    gross_nav = to_decimal(gross_nav, "gross_nav")
    fee = compute_accrued_fee(gross_nav, fee_rate_bps, elapsed_seconds(last_update, now))
    fee = min(fee, gross_nav)
    return gross_nav - fee, fee


def compute_oracle_update(view: LedgerView, caller: str, gross_nav: Decimal, now: datetime) -> PendingTransaction:
    """Fee-adjusted UpdateNAV built from a gross valuation."""
    vault = view.get_vault()
    net_nav, fee = compute_net_nav(gross_nav, vault.fee_rate_bps, vault.last_update, now)
    return compute_nav_update(view, caller, net_nav, now, fee)


# ============================================================================
# ORACLE
# ============================================================================

class OracleCycleStatus(Enum):
    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass(frozen=True, slots=True)
class OracleCycleResult:
    """Outcome of one NAV cycle. Fields after status are None when skipped."""
    status: OracleCycleStatus
    at: datetime
    gross_nav: Optional[Decimal] = None
    accrued_fee: Optional[Decimal] = None
    net_nav: Optional[Decimal] = None
    share_price: Optional[Decimal] = None
    reported_supply: Optional[Decimal] = None
    reason: Optional[str] = None

    @property
    def applied(self) -> bool:
        return self.status is OracleCycleStatus.APPLIED


class NavOracle:
    """
    Drives NAV cycles against a ledger.

    The external fetch runs on a worker thread and is abandoned after
    config.valuation_timeout_seconds. Cycles that cannot complete are
    returned as SKIPPED results with a reason.

    Example:
        with NavOracle(ledger, source, VaultConfig(), "operator") as oracle:
            result = oracle.run_cycle(now)
    """

    def __init__(
        self,
        ledger,
        source: ValuationSource,
        config: Optional[VaultConfig] = None,
        operator: Optional[str] = None,
    ):
        self.ledger = ledger
        self.source = source
        self.config = config or VaultConfig()
        self._operator = operator
        self.verbose = ledger.verbose
        self._executor = ThreadPoolExecutor(max_workers=2, thread_name_prefix="nav-oracle")
        self.history: List[OracleCycleResult] = []

    @property
    def operator(self) -> str:
        return self._operator or self.ledger.get_vault().operator

    def is_due(self, now: datetime) -> bool:
        vault = self.ledger.get_vault()
        return now - vault.last_update >= self.config.nav_update_interval

    def fetch(self, at: datetime) -> Valuation:
        """
        Query the source with the configured timeout.

        Raises:
            ValuationUnavailable: source raised, timed out or returned nothing
        """
        future = self._executor.submit(self.source.get_valuation, at)
        try:
            valuation = future.result(timeout=self.config.valuation_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise ValuationUnavailable(
                f"valuation source timed out after {self.config.valuation_timeout_seconds}s"
            ) from None
        except Exception as exc:
            raise ValuationUnavailable(f"valuation source failed: {exc!r}") from exc
        if valuation is None:
            raise ValuationUnavailable(f"no valuation available at {at}")
        if not isinstance(valuation, Valuation):
            raise ValuationUnavailable(f"valuation source returned {type(valuation).__name__}")
        return valuation

    def run_cycle(self, now: Optional[datetime] = None) -> OracleCycleResult:
        """
        Run one NAV cycle at now (default: ledger time).

        Never posts a NAV it could not obtain. Paused vaults and stale
        timestamps skip the cycle; any other error propagates.
        """
        if now is None:
            now = self.ledger.current_time
        elif now > self.ledger.current_time:
            self.ledger.advance_time(now)

        try:
            valuation = self.fetch(now)
        except ValuationUnavailable as exc:
            return self._skipped(now, str(exc))

        # Values of the attempt that committed (the last one built).
        posted = {}

        def build(view: LedgerView) -> PendingTransaction:
            vault = view.get_vault()
            net_nav, fee = compute_net_nav(valuation.total_assets, vault.fee_rate_bps, vault.last_update, now)
            posted.update(net_nav=net_nav, fee=fee, total_shares=vault.total_shares)
            return compute_nav_update(view, self.operator, net_nav, now, fee)

        try:
            self.ledger.execute_with_retry(build, self.config.max_settlement_retries, "nav update")
        except (StaleUpdate, InvalidState) as exc:
            return self._skipped(now, str(exc))

        result = OracleCycleResult(
            status=OracleCycleStatus.APPLIED,
            at=now,
            gross_nav=valuation.total_assets,
            accrued_fee=posted['fee'],
            net_nav=posted['net_nav'],
            share_price=share_price(posted['net_nav'], posted['total_shares']),
            reported_supply=valuation.total_supply,
        )
        if self.verbose:
            print(
                f"✓ NAV {now}: gross={result.gross_nav} fee={result.accrued_fee} "
                f"net={result.net_nav} price={result.share_price}"
            )
            if valuation.total_supply is not None and valuation.total_supply != posted['total_shares']:
                print(
                    f"⚠️  NAV {now}: source reports supply {valuation.total_supply}, "
                    f"vault records {posted['total_shares']}"
                )
        self.history.append(result)
        return result

    def _skipped(self, now: datetime, reason: str) -> OracleCycleResult:
        result = OracleCycleResult(status=OracleCycleStatus.SKIPPED, at=now, reason=reason)
        if self.verbose:
            print(f"⚠️  NAV cycle skipped at {now}: {reason}")
        self.history.append(result)
        return result

    def close(self) -> None:
        self._executor.shutdown(wait=False)

    def __enter__(self) -> NavOracle:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
