"""
STATE MACHINES FOR SALES, PLOTS, CANCELLATIONS AND APPROVALS

Each lifecycle registers its legal (from, to) pairs once at import time.
Callers validate a move before writing it; the approval workflow also runs a
guard (who may act) and a handler (the version-checked claim plus side
effects) through `transition`.

The machine never writes the status itself. The caller persists it with a
version-checked update so the status change and its side effects commit in
the same unit of work.

Usage:
    machine = StateMachine("sale")
    machine.register("Active", "On Hold", description="Put on hold")
    machine.validate_transition(sale["status"], "On Hold")
    await machine.transition(doc, "Approved", session=ctx, context={"actor": user})
"""

from dataclasses import dataclass
from typing import Dict, Any, Optional, Callable, Awaitable, List, Tuple
from datetime import datetime
import logging

from engine.errors import EngineError, InvalidStateError, PermissionDeniedError

logger = logging.getLogger(__name__)


# =============================================================================
# EXCEPTIONS
# =============================================================================

class InvalidTransitionError(InvalidStateError):
    """The requested move is not registered for the current status."""

    def __init__(self, entity: str, from_state: str, to_state: str, allowed: List[str]):
        if allowed:
            message = f"{entity} cannot move from '{from_state}' to '{to_state}' (allowed: {', '.join(allowed)})"
        else:
            message = f"{entity} is '{from_state}', which is final"
        super().__init__(message, {
            "entity": entity,
            "from_state": from_state,
            "to_state": to_state,
            "allowed": allowed
        })
        self.from_state = from_state
        self.to_state = to_state
        self.allowed = allowed


class GuardConditionError(PermissionDeniedError):
    """A guard refused the move, usually because of the actor's role."""

    def __init__(self, entity: str, from_state: str, to_state: str, reason: str):
        super().__init__(reason, {"entity": entity, "from_state": from_state, "to_state": to_state})
        self.reason = reason


class TransitionHandlerError(EngineError):
    code = "TRANSITION_FAILED"
    status_code = 500


# async def guard(doc, context) -> (allowed, reason); may also raise an EngineError
Guard = Callable[[Dict[str, Any], Dict[str, Any]], Awaitable[Tuple[bool, str]]]
# async def handler(doc, context, session) -> optional result dict
Handler = Callable[[Dict[str, Any], Dict[str, Any], Any], Awaitable[Optional[Dict[str, Any]]]]


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str
    handler: Optional[Handler] = None
    guard: Optional[Guard] = None
    description: str = ""


# =============================================================================
# STATE MACHINE
# =============================================================================

class StateMachine:

    def __init__(self, entity_name: str, status_field: str = "status"):
        self.entity_name = entity_name
        self.status_field = status_field
        self._transitions: Dict[Tuple[str, str], Transition] = {}

    def register(
        self,
        from_state: str,
        to_state: str,
        handler: Optional[Handler] = None,
        guard: Optional[Guard] = None,
        description: str = ""
    ) -> "StateMachine":
        if (from_state, to_state) in self._transitions:
            raise ValueError(f"{self.entity_name}: '{from_state}' -> '{to_state}' registered twice")
        self._transitions[(from_state, to_state)] = Transition(from_state, to_state, handler, guard, description)
        return self

    def allowed_from(self, from_state: str) -> List[str]:
        return [dst for (src, dst) in self._transitions if src == from_state]

    def validate_transition(self, from_state: str, to_state: str) -> Transition:
        transition = self._transitions.get((from_state, to_state))
        if transition is None:
            raise InvalidTransitionError(self.entity_name, from_state, to_state, self.allowed_from(from_state))
        return transition

    async def transition(
        self,
        doc: Dict[str, Any],
        to_state: str,
        session: Any = None,
        context: Optional[Dict[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        """
        Validate, run the guard, then run the handler.

        Engine errors from guard or handler propagate unchanged; anything else
        raised by a handler is wrapped in TransitionHandlerError so the unit of
        work aborts with a structured error.
        """
        context = context or {}
        from_state = doc.get(self.status_field)
        if from_state is None:
            raise InvalidStateError(f"{self.entity_name} has no '{self.status_field}'")

        transition = self.validate_transition(from_state, to_state)

        if transition.guard:
            allowed, reason = await transition.guard(doc, context)
            if not allowed:
                raise GuardConditionError(self.entity_name, from_state, to_state, reason)

        logger.info(f"[STATE_MACHINE] {self.entity_name} {doc.get('_id')}: '{from_state}' -> '{to_state}'")

        if not transition.handler:
            return None
        try:
            return await transition.handler(doc, context, session)
        except EngineError:
            raise
        except Exception as e:
            logger.error(f"[STATE_MACHINE] Handler failed for {self.entity_name} '{from_state}' -> '{to_state}': {e}")
            raise TransitionHandlerError(
                f"{self.entity_name} transition '{from_state}' -> '{to_state}' failed: {e}",
                {"from_state": from_state, "to_state": to_state}
            )

    def get_history_entry(
        self,
        from_state: str,
        to_state: str,
        user_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Entry to $push onto the document's status_history"""
        return {
            "from_state": from_state,
            "to_state": to_state,
            "transitioned_at": datetime.utcnow(),
            "transitioned_by": user_id,
            "metadata": metadata or {}
        }
