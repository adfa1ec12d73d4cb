"""
engine.py - Vault Engine

Drives the periodic work of the vault on a ledger clock.

Execution order each step():
1. Advance ledger time
2. NAV oracle cycle (when nav_update_interval has elapsed)
3. Consolidation sweep (when consolidation_interval has elapsed)
4. Arbitrage control loop (when a market maker and a pool exist)

Arbitrage runs last so that it trades against the freshest NAV.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from .arbitrage import ArbitrageResult, MarketMaker
from .config import VaultConfig
from .consolidation import ConsolidationReport, ConsolidationScheduler
from .core import RecordNotFound
from .ledger import Ledger
from .oracle import NavOracle, OracleCycleResult


@dataclass(frozen=True, slots=True)
class EngineStepReport:
    at: datetime
    oracle: Optional[OracleCycleResult] = None
    consolidation: Optional[ConsolidationReport] = None
    arbitrage: Optional[ArbitrageResult] = None


class VaultEngine:
    """
    Scheduler combining the oracle, consolidation and market maker.

    Every component is optional; a step skips what is not configured.
    """

    def __init__(
        self,
        ledger: Ledger,
        config: Optional[VaultConfig] = None,
        oracle: Optional[NavOracle] = None,
        consolidator: Optional[ConsolidationScheduler] = None,
        market_maker: Optional[MarketMaker] = None,
    ):
        self.ledger = ledger
        self.config = config or VaultConfig()
        self.oracle = oracle
        self.consolidator = consolidator
        self.market_maker = market_maker

        # Safety limit for arbitrage iterations per step
        self.max_arbitrage_iterations = 10
        self.verbose = ledger.verbose

    def step(self, timestamp: datetime) -> EngineStepReport:
        """
        Advance time and run every component that is due.

        Args:
            timestamp: New ledger time

        Returns:
            EngineStepReport with one entry per component that ran
        """
        self.ledger.advance_time(timestamp)

        oracle_result = None
        if self.oracle is not None and self.oracle.is_due(timestamp):
            oracle_result = self.oracle.run_cycle(timestamp)

        consolidation = None
        if self.consolidator is not None and self.consolidator.is_due(timestamp):
            consolidation = self.consolidator.run_sweep(timestamp)

        arbitrage = None
        if self.market_maker is not None and self._has_pool():
            arbitrage = self.market_maker.run(self.max_arbitrage_iterations)

        return EngineStepReport(timestamp, oracle_result, consolidation, arbitrage)

    def run(self, timestamps: Iterable[datetime]) -> List[EngineStepReport]:
        """Run the engine through a sequence of timestamps."""
        return [self.step(timestamp) for timestamp in timestamps]

    def _has_pool(self) -> bool:
        try:
            self.ledger.get_pool()
        except RecordNotFound:
            return False
        return True
