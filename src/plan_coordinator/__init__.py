"""Provide the public `plan_coordinator` package exports."""

from __future__ import annotations

from .claims import ClaimProtocol
from .coordinator import PlanCoordinator, build_coordinator
from .lifecycle import LifecycleReporter
from .plan_codec import get_claimable_tasks, parse_plan, update_task_in_plan_body

__version__ = "0.1.0"

__all__ = [
    "ClaimProtocol",
    "LifecycleReporter",
    "PlanCoordinator",
    "build_coordinator",
    "get_claimable_tasks",
    "parse_plan",
    "update_task_in_plan_body",
]
