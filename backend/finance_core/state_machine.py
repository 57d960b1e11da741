"""
WORKFLOW STATE MACHINE

A reusable state machine for entity status transitions with:
- Transition registration with handlers and guards
- Transition validation against the registered adjacency table
- Automatic status and history updates
- Invalid transition rejection (nothing is changed on rejection)

The quote lifecycle is registered at the bottom of this module:

    draft    -> pending, cancelled
    pending  -> approved, rejected, cancelled
    approved -> sent
    sent     -> accepted, rejected
    accepted, rejected, cancelled are terminal

Usage:
    result = await quote_state_machine.transition(
        quote, "approved", user_id=caller.user_id
    )
"""

from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, Tuple, Type
import logging

from .domain import Quote, QuoteStatus
from .errors import InvalidTransition

logger = logging.getLogger(__name__)


# =============================================================================
# TYPE DEFINITIONS
# =============================================================================

# Handler signature: async def handler(entity, context) -> Dict[str, Any]
TransitionHandler = Callable[[Any, Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]

# Guard signature: async def guard(entity, context) -> Tuple[bool, str]
GuardCondition = Callable[[Any, Dict[str, Any]], Awaitable[Tuple[bool, str]]]


def _state_value(state: Any) -> str:
    return state.value if isinstance(state, Enum) else str(state)


# =============================================================================
# TRANSITION DEFINITION
# =============================================================================

class Transition:
    """Definition of a state transition."""

    def __init__(
        self,
        from_state: str,
        to_state: str,
        handler: Optional[TransitionHandler] = None,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.handler = handler
        self.guard = guard
        self.description = description

    def __repr__(self):
        return f"Transition({self.from_state} -> {self.to_state})"


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:
    """
    Generic state machine over objects with a status attribute.

    Guards and handlers run before the status is written, so a rejected
    transition leaves the entity untouched.

    Example:
        machine = StateMachine("quote", state_type=QuoteStatus)
        machine.register("draft", "pending", guard=has_line_items)
        result = await machine.transition(quote, "pending", user_id=user_id)
    """

    def __init__(
        self,
        entity_name: str,
        status_field: str = "status",
        history_field: Optional[str] = "state_history",
        state_type: Optional[Type[Enum]] = None
    ):
        """
        Args:
            entity_name: Name of the entity (for logging/errors)
            status_field: Attribute that holds the current state
            history_field: Attribute for transition history (None to disable)
            state_type: Enum the status attribute is stored as, if any
        """
        self.entity_name = entity_name
        self.status_field = status_field
        self.history_field = history_field
        self.state_type = state_type

        # Transitions indexed by (from_state, to_state)
        self._transitions: Dict[Tuple[str, str], Transition] = {}
        self._states: Set[str] = set()

    # =========================================================================
    # REGISTRATION
    # =========================================================================

    def register(
        self,
        from_state: Any,
        to_state: Any,
        handler: Optional[TransitionHandler] = None,
        guard: Optional[GuardCondition] = None,
        description: str = ""
    ) -> "StateMachine":
        """Register a state transition. Returns self for chaining."""
        src, dst = _state_value(from_state), _state_value(to_state)
        key = (src, dst)

        if key in self._transitions:
            logger.warning(
                f"[STATE_MACHINE] Overwriting transition {self.entity_name}: "
                f"'{src}' -> '{dst}'"
            )

        self._transitions[key] = Transition(
            from_state=src,
            to_state=dst,
            handler=handler,
            guard=guard,
            description=description
        )
        self._states.add(src)
        self._states.add(dst)
        return self

    # =========================================================================
    # VALIDATION
    # =========================================================================

    def get_allowed_transitions(self, from_state: Any) -> List[str]:
        """Get list of valid target states from a given state."""
        src = _state_value(from_state)
        return [dst for (s, dst) in self._transitions.keys() if s == src]

    def can_transition(self, from_state: Any, to_state: Any) -> bool:
        """Check if transition is registered (does not check guards)."""
        return (_state_value(from_state), _state_value(to_state)) in self._transitions

    def is_terminal(self, state: Any) -> bool:
        return not self.get_allowed_transitions(state)

    def validate_transition(self, from_state: Any, to_state: Any) -> None:
        """Raises InvalidTransition if the edge is not registered."""
        if not self.can_transition(from_state, to_state):
            src = _state_value(from_state)
            raise InvalidTransition(
                entity=self.entity_name,
                from_state=src,
                to_state=_state_value(to_state),
                allowed=self.get_allowed_transitions(from_state),
                reason=f"'{src}' is a terminal state" if self.is_terminal(from_state) else ""
            )

    async def check_guard(
        self,
        entity: Any,
        from_state: str,
        to_state: str,
        context: Dict[str, Any]
    ) -> None:
        """Raises InvalidTransition carrying the guard's reason if it rejects."""
        transition = self._transitions.get((from_state, to_state))

        if transition and transition.guard:
            allowed, reason = await transition.guard(entity, context)
            if not allowed:
                logger.info(
                    f"[STATE_MACHINE] Guard blocked {self.entity_name}: "
                    f"'{from_state}' -> '{to_state}': {reason}"
                )
                raise InvalidTransition(
                    entity=self.entity_name,
                    from_state=from_state,
                    to_state=to_state,
                    allowed=self.get_allowed_transitions(from_state),
                    reason=reason
                )

    # =========================================================================
    # TRANSITION EXECUTION
    # =========================================================================

    async def transition(
        self,
        entity: Any,
        to_state: Any,
        user_id: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """
        Execute a state transition on ``entity`` in place.

        Returns:
            Result dict with from_state, to_state, handler_result and
            transitioned_at

        Raises:
            InvalidTransition: edge not registered, or a guard rejected it
        """
        context = dict(context or {})
        context.setdefault("user_id", user_id)

        from_state = _state_value(getattr(entity, self.status_field))
        target = _state_value(to_state)

        self.validate_transition(from_state, target)
        await self.check_guard(entity, from_state, target, context)

        transition = self._transitions[(from_state, target)]

        logger.info(
            f"[STATE_MACHINE] Executing {self.entity_name}: "
            f"'{from_state}' -> '{target}'"
        )

        handler_result = {}
        if transition.handler:
            handler_result = await transition.handler(entity, context) or {}

        new_state = self.state_type(target) if self.state_type else target
        setattr(entity, self.status_field, new_state)

        history_entry = self.get_history_entry(from_state, target, user_id, context.get("metadata"))
        if self.history_field:
            getattr(entity, self.history_field).append(history_entry)

        return {
            "status": "success",
            "from_state": from_state,
            "to_state": target,
            "handler_result": handler_result,
            "transitioned_at": history_entry["transitioned_at"]
        }

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """History entry appended to the entity's state_history."""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }

    def __repr__(self):
        return (
            f"StateMachine({self.entity_name}, "
            f"states={len(self._states)}, "
            f"transitions={len(self._transitions)})"
        )


# =============================================================================
# QUOTE LIFECYCLE
# =============================================================================

QUOTE_TRANSITIONS: Dict[QuoteStatus, Tuple[QuoteStatus, ...]] = {
    QuoteStatus.DRAFT: (QuoteStatus.PENDING, QuoteStatus.CANCELLED),
    QuoteStatus.PENDING: (QuoteStatus.APPROVED, QuoteStatus.REJECTED, QuoteStatus.CANCELLED),
    QuoteStatus.APPROVED: (QuoteStatus.SENT,),
    QuoteStatus.SENT: (QuoteStatus.ACCEPTED, QuoteStatus.REJECTED),
    QuoteStatus.ACCEPTED: (),
    QuoteStatus.REJECTED: (),
    QuoteStatus.CANCELLED: (),
}


async def _has_line_items(quote: Quote, context: Dict[str, Any]) -> Tuple[bool, str]:
    if not quote.line_items:
        return False, "A quote needs at least one line item before it can be submitted"
    return True, ""


async def _stamp_approved(quote: Quote, context: Dict[str, Any]) -> Dict[str, Any]:
    quote.approved_at = datetime.utcnow()
    quote.approved_by = context.get("user_id")
    return {"approved_by": quote.approved_by}


def _stamp(attribute: str) -> TransitionHandler:
    async def handler(quote: Quote, context: Dict[str, Any]) -> Dict[str, Any]:
        setattr(quote, attribute, datetime.utcnow())
        return {}
    return handler


_QUOTE_HANDLERS: Dict[QuoteStatus, TransitionHandler] = {
    QuoteStatus.APPROVED: _stamp_approved,
    QuoteStatus.SENT: _stamp("sent_at"),
    QuoteStatus.ACCEPTED: _stamp("accepted_at"),
    QuoteStatus.REJECTED: _stamp("rejected_at"),
    QuoteStatus.CANCELLED: _stamp("cancelled_at"),
}


def build_quote_state_machine() -> StateMachine:
    machine = StateMachine("quote", state_type=QuoteStatus)
    for from_state, targets in QUOTE_TRANSITIONS.items():
        for to_state in targets:
            guard = _has_line_items if (from_state, to_state) == (
                QuoteStatus.DRAFT, QuoteStatus.PENDING
            ) else None
            machine.register(
                from_state,
                to_state,
                handler=_QUOTE_HANDLERS.get(to_state),
                guard=guard,
                description=f"quote {from_state.value} -> {to_state.value}"
            )
    return machine


quote_state_machine = build_quote_state_machine()
