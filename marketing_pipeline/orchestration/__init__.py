"""
Orchestration Package

State machine, budget circuit breaker, decision-log replay and the human review queue
for the marketing decision pipeline.
"""

from .circuit_breaker import BudgetLedger, LedgerDecision, clamp, enforce_cap
from .manager import TaskManager
from .pipeline import Orchestrator
from .replay import outcome_from_entry, replay
from .review import InMemoryReviewStore, ReviewManager, ReviewStatus, ReviewTicket
from .transitions import StageOutcome, Transition, next_state

__all__ = [
    # State machine
    "Orchestrator",
    "TaskManager",
    "StageOutcome",
    "Transition",
    "next_state",
    # Circuit breaker
    "BudgetLedger",
    "LedgerDecision",
    "clamp",
    "enforce_cap",
    # Replay
    "replay",
    "outcome_from_entry",
    # Review
    "InMemoryReviewStore",
    "ReviewManager",
    "ReviewStatus",
    "ReviewTicket",
]
