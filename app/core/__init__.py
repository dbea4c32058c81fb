# Core engine components
from app.core.state_machine import StateMachine, state_machine
from app.core.dedup import DeduplicationGuard, dedup_guard
from app.core.approval import ApprovalEngine, approval_engine
from app.core.cache import TTLCache

__all__ = [
    "StateMachine",
    "state_machine",
    "DeduplicationGuard",
    "dedup_guard",
    "ApprovalEngine",
    "approval_engine",
    "TTLCache",
]
