"""State machine for managing request lifecycle transitions.

Handles state changes with validation, uniqueness-slot release and audit
event creation.
"""

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Optional

from app.models import ACTIVE_STATES, RequestEvent, RequestState

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession
    from app.models import MediaRequest

logger = logging.getLogger(__name__)

# Valid state transitions
# Key: current state, Value: list of valid next states
#
# Special cases:
# - PENDING → AVAILABLE: media showed up before anyone approved it
# - FAILED → PENDING: admin retry, same row is resubmitted
# - REMOVED is terminal
VALID_TRANSITIONS: dict[RequestState, list[RequestState]] = {
    RequestState.PENDING: [
        RequestState.SUBMITTED,
        RequestState.AVAILABLE,
        RequestState.DENIED,
        RequestState.FAILED,
        RequestState.REMOVED,
    ],
    RequestState.SUBMITTED: [RequestState.AVAILABLE, RequestState.FAILED, RequestState.REMOVED],
    RequestState.FAILED: [RequestState.PENDING, RequestState.REMOVED],
    RequestState.AVAILABLE: [RequestState.REMOVED],
    RequestState.DENIED: [RequestState.REMOVED],
    RequestState.REMOVED: [],
}


class StateMachine:
    """
    Manages state transitions for media requests.

    Usage:
        sm = StateMachine()
        await sm.transition(request, RequestState.SUBMITTED, db, ...)

    Leaving the active set (denied / removed) clears the request's
    active_key and its items' keys so the media can be requested again.
    """

    def can_transition(
        self, current: RequestState, target: RequestState
    ) -> bool:
        """Check if transition from current to target state is valid."""
        valid_next = VALID_TRANSITIONS.get(current, [])
        return target in valid_next

    async def transition(
        self,
        request: "MediaRequest",
        new_state: RequestState,
        db: "AsyncSession",
        service: str,
        event_type: str,
        details: Optional[str] = None,
    ) -> bool:
        """
        Transition a request to a new state.

        Args:
            request: The MediaRequest to transition
            new_state: Target state
            db: Database session
            service: Name of service triggering the change (e.g., 'api', 'radarr')
            event_type: Type of event (e.g., 'Approved', 'Denied')
            details: Human-readable details for the audit trail

        Returns:
            True if transition was successful, False if invalid.
        """
        old_state = request.status

        # Validate transition
        if not self.can_transition(old_state, new_state):
            logger.warning(
                f"Invalid transition for request {request.id}: "
                f"{old_state.value} -> {new_state.value}"
            )
            return False

        now = datetime.utcnow()
        request.status = new_state
        request.status_changed_at = now
        request.updated_at = now

        if new_state not in ACTIVE_STATES:
            request.active_key = None
            for item in request.items:
                item.active_key = None

        db.add(RequestEvent(
            request_id=request.id,
            service=service,
            event_type=event_type,
            from_status=old_state,
            to_status=new_state,
            details=details,
            timestamp=now,
        ))

        logger.info(
            f"Request {request.id} ({request.title}): "
            f"{old_state.value} -> {new_state.value} via {service}"
        )
        return True

    def add_event(
        self,
        request: "MediaRequest",
        db: "AsyncSession",
        service: str,
        event_type: str,
        details: Optional[str] = None,
    ) -> RequestEvent:
        """
        Add an audit event without changing state.

        Used for the creation event and informational events.
        """
        event = RequestEvent(
            request_id=request.id,
            service=service,
            event_type=event_type,
            from_status=None,
            to_status=request.status,
            details=details,
            timestamp=datetime.utcnow(),
        )
        db.add(event)
        return event


# Global instance
state_machine = StateMachine()
