"""Stateful services: fixture store, zombie reconciliation, round progression."""

from sofa_worker.services.reconciliation import ReconciliationReconciler
from sofa_worker.services.round_scheduler import (
    RoundScheduler,
    classify_cup_fixtures,
    is_round_resolved,
)
from sofa_worker.services.store import MatchStateStore

__all__ = [
    "MatchStateStore",
    "ReconciliationReconciler",
    "RoundScheduler",
    "classify_cup_fixtures",
    "is_round_resolved",
]
