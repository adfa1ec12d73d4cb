"""
consolidation.py - Periodic holding consolidation sweep

Groups HoldingRecords by owner and, for every owner above the
fragmentation threshold, replaces all their records with one record of
the exact sum (compute_consolidation). Each owner is merged under the
same owner lock settlement uses, so a merge never races a burn.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from .config import VaultConfig
from .holdings import compute_consolidation


@dataclass
class ConsolidationReport:
    at: datetime
    owners_checked: int = 0
    consolidated: Dict[str, int] = field(default_factory=dict)   # owner -> records merged

    @property
    def records_merged(self) -> int:
        return sum(self.consolidated.values())


class ConsolidationScheduler:
    """Runs consolidation sweeps at config.consolidation_interval."""

    def __init__(self, ledger, config: Optional[VaultConfig] = None, operator: Optional[str] = None):
        self.ledger = ledger
        self.config = config or VaultConfig()
        self._operator = operator
        self.verbose = ledger.verbose
        self.last_sweep: Optional[datetime] = None
        self.reports: List[ConsolidationReport] = []

    @property
    def operator(self) -> str:
        return self._operator or self.ledger.get_vault().operator

    def is_due(self, now: datetime) -> bool:
        return self.last_sweep is None or now - self.last_sweep >= self.config.consolidation_interval

    def run_sweep(self, now: Optional[datetime] = None) -> ConsolidationReport:
        """
        Consolidate every owner above the threshold.

        Owners are visited in sorted order. A ConcurrencyConflict that
        survives config.max_settlement_retries propagates.
        """
        now = now or self.ledger.current_time
        threshold = self.config.fragmentation_threshold
        report = ConsolidationReport(at=now)
        for owner in sorted(self.ledger.list_owners()):
            report.owners_checked += 1
            with self.ledger.owner_lock(owner):
                before = self.ledger.record_count(owner)
                if before <= threshold:
                    continue
                self.ledger.execute_with_retry(
                    lambda view, owner=owner: compute_consolidation(view, self.operator, owner, threshold),
                    self.config.max_settlement_retries,
                    f"consolidate {owner}",
                )
                report.consolidated[owner] = before
        self.last_sweep = now
        self.reports.append(report)
        if self.verbose:
            print(
                f"✓ CONSOLIDATION {now}: {len(report.consolidated)} of {report.owners_checked} owners, "
                f"{report.records_merged} records merged"
            )
        return report
