"""Cadence driver and per-account schedule state."""

from .apsched_adapter import APSchedulerAdapter
from .state import AccountState, Phase, ScheduleRegistry, transition

__all__ = ["APSchedulerAdapter", "AccountState", "Phase", "ScheduleRegistry", "transition"]
