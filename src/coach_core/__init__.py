from .coach import CoachSession
from .decision_engine import DecisionEngine
from .executor import PlanExecutor
from .history import SnapshotHistory
from .monitor import OutcomeMonitor
from .settings import settings


__all__ = [
    "settings",
    "CoachSession",
    "DecisionEngine",
    "OutcomeMonitor",
    "PlanExecutor",
    "SnapshotHistory",
]
