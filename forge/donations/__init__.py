"""forge.donations

Correlating two payment legs into one donation, and what a donation earns.
"""

from .ledger import AppendResult, AppendStatus, LegLedger
from .queries import DonationQueries
from .reconciler import DonationReconciler, ReconcileOutcome, Transition
from .registry import CorrelationRegistry
from .rewards import RewardConverter, to_stars
from .views import AggregationViews, SqliteVersionSource, StaticUserDirectory, UserDirectory, VersionSource

__all__ = [
    "AggregationViews",
    "AppendResult",
    "AppendStatus",
    "CorrelationRegistry",
    "DonationQueries",
    "DonationReconciler",
    "LegLedger",
    "ReconcileOutcome",
    "RewardConverter",
    "SqliteVersionSource",
    "StaticUserDirectory",
    "Transition",
    "UserDirectory",
    "VersionSource",
    "to_stars",
]
