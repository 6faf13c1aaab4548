"""
Reconciliation jobs: alerts, daily usage rollup, reservation and bonus sweeps.
"""

from modules.reconciliation.alerts import AlertSweep
from modules.reconciliation.daily_summary import DailyUsageRollup
from modules.reconciliation.jobs import REPEATABLE_JOBS, ReconciliationJobs
from modules.reconciliation.reservation_sweep import ReservationSweep

__all__ = ["AlertSweep", "DailyUsageRollup", "REPEATABLE_JOBS", "ReconciliationJobs", "ReservationSweep"]
