"""
TWO-TIER APPROVAL WORKFLOW

One parameterized state machine shared by Receipts and Expenses:

    Draft -> Pending Accounts -> Pending HOF -> Approved
                   |                  |
                   +----> Rejected <--+

Gate roles:
    Pending Accounts  AccountManager or Admin
    Pending HOF       HOF or Admin

Every transition is claimed with a version-checked update on
(_id, version, status), so two concurrent approvals of the same document
produce exactly one side effect. The side effect of final approval is an
injected hook that runs in the same unit of work as the status change,
ahead of it, so the version-checked claim is the last write and a failed
side effect leaves the document pending.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple
import logging

from engine.documents import to_object_id
from engine.errors import (
    ConcurrencyConflictError, InvalidStateError, NotFoundError, PermissionDeniedError, ValidationError
)
from engine.state_machine import StateMachine
from engine.unit_of_work import UnitOfWork, UnitOfWorkContext
from engine.version_lock_engine import VersionLockEngine

logger = logging.getLogger(__name__)


class ApprovalStatus:
    DRAFT = "Draft"
    PENDING_ACCOUNTS = "Pending Accounts"
    PENDING_HOF = "Pending HOF"
    APPROVED = "Approved"
    REJECTED = "Rejected"

    ALL = (DRAFT, PENDING_ACCOUNTS, PENDING_HOF, APPROVED, REJECTED)
    PENDING = (PENDING_ACCOUNTS, PENDING_HOF)


class Role:
    ADMIN = "Admin"
    ACCOUNT_MANAGER = "AccountManager"
    HOF = "HOF"

    ALL = (ADMIN, ACCOUNT_MANAGER, HOF)


# pending status -> (approval level label, roles allowed to act)
GATES = {
    ApprovalStatus.PENDING_ACCOUNTS: ("Accounts Manager", (Role.ACCOUNT_MANAGER, Role.ADMIN)),
    ApprovalStatus.PENDING_HOF: ("HOF", (Role.HOF, Role.ADMIN)),
}

NEXT_ON_APPROVE = {
    ApprovalStatus.PENDING_ACCOUNTS: ApprovalStatus.PENDING_HOF,
    ApprovalStatus.PENDING_HOF: ApprovalStatus.APPROVED,
}

ValidateHook = Callable[[UnitOfWorkContext, Dict[str, Any]], Awaitable[None]]
ApplyHook = Callable[[UnitOfWorkContext, Dict[str, Any], Dict[str, Any]], Awaitable[Optional[Dict[str, Any]]]]


@dataclass
class ApprovalHooks:
    """
    validate_submit    - raise to refuse Draft -> Pending Accounts
    validate_approval  - raise to refuse final approval (runs before the claim)
    apply_approval     - side effect of final approval (runs before the claim);
                         a returned {"fields": {...}} is written with the claim
    lock_keys          - extra lock keys for a document (sale, account, ...)
    """
    validate_submit: Optional[ValidateHook] = None
    validate_approval: Optional[ValidateHook] = None
    apply_approval: Optional[ApplyHook] = None
    lock_keys: Optional[Callable[[Dict[str, Any]], List[str]]] = None


def doc_lock_key(doc_id) -> str:
    return f"doc:{doc_id}"


def queue_statuses_for(role: str) -> List[str]:
    return [status for status, (_, roles) in GATES.items() if role in roles]


class ApprovalWorkflow:

    def __init__(
        self,
        entity_type: str,
        uow: UnitOfWork,
        version_lock: VersionLockEngine,
        hooks: Optional[ApprovalHooks] = None,
        status_field: str = "approval_status",
        number_field: Optional[str] = None
    ):
        self.entity_type = entity_type
        self.uow = uow
        self.version_lock = version_lock
        self.collection = version_lock.collection(entity_type)
        self.hooks = hooks or ApprovalHooks()
        self.status_field = status_field
        self.number_field = number_field
        self.machine = self._build_machine()

    def _build_machine(self) -> StateMachine:
        s = ApprovalStatus
        machine = StateMachine(self.entity_type.lower(), status_field=self.status_field)
        machine.register(s.DRAFT, s.PENDING_ACCOUNTS, self._claim, self._submit_guard, "Submit")
        machine.register(s.PENDING_ACCOUNTS, s.PENDING_HOF, self._claim, self._gate_guard, "Accounts approval")
        machine.register(s.PENDING_HOF, s.APPROVED, self._claim_and_apply, self._final_guard, "HOF approval")
        machine.register(s.PENDING_ACCOUNTS, s.REJECTED, self._claim, self._gate_guard, "Rejected by accounts")
        machine.register(s.PENDING_HOF, s.REJECTED, self._claim, self._gate_guard, "Rejected by HOF")
        return machine

    def _label(self, doc: Dict[str, Any]) -> str:
        if self.number_field and doc.get(self.number_field):
            return doc[self.number_field]
        return str(doc["_id"])

    # =========================================================================
    # GUARDS
    # =========================================================================

    async def _submit_guard(self, doc: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
        actor = context["actor"]
        if actor.get("role") != Role.ADMIN and doc.get("created_by") != actor.get("user_id"):
            return False, "Only the creator or an Admin can submit for approval"
        if self.hooks.validate_submit:
            await self.hooks.validate_submit(context["ctx"], doc)
        return True, ""

    async def _gate_guard(self, doc: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
        level, roles = GATES[doc[self.status_field]]
        if context["actor"].get("role") not in roles:
            return False, f"{level} approval requires role {' or '.join(roles)}"
        return True, ""

    async def _final_guard(self, doc: Dict[str, Any], context: Dict[str, Any]) -> Tuple[bool, str]:
        allowed, reason = await self._gate_guard(doc, context)
        if allowed and self.hooks.validate_approval:
            await self.hooks.validate_approval(context["ctx"], doc)
        return allowed, reason

    # =========================================================================
    # HANDLERS
    # =========================================================================

    async def _claim(self, doc: Dict[str, Any], context: Dict[str, Any], ctx: UnitOfWorkContext,
                     extra_fields: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        actor = context["actor"]
        from_state = doc[self.status_field]
        to_state = context["to_state"]
        now = datetime.utcnow()

        level = GATES[from_state][0] if from_state in GATES else "Submitter"
        action = {
            ApprovalStatus.PENDING_ACCOUNTS: "Submitted",
            ApprovalStatus.REJECTED: "Rejected",
        }.get(to_state, "Approved")
        entry = {
            "approved_by": actor.get("user_id"),
            "approver_role": actor.get("role"),
            "approval_level": level,
            "action": action,
            "from_state": from_state,
            "to_state": to_state,
            "remarks": context.get("remarks"),
            "approved_at": now,
        }

        fields: Dict[str, Any] = {self.status_field: to_state}
        if to_state == ApprovalStatus.PENDING_ACCOUNTS:
            fields.update({"submitted_by": actor.get("user_id"), "submitted_at": now})
        elif to_state == ApprovalStatus.APPROVED:
            fields.update({"approved_by": actor.get("user_id"), "approved_at": now})
        elif to_state == ApprovalStatus.REJECTED:
            fields.update({
                "rejected_by": actor.get("user_id"),
                "rejected_at": now,
                "rejection_reason": context.get("remarks"),
            })
        if extra_fields:
            fields.update(extra_fields)

        await self.version_lock.apply(
            self.entity_type, doc, fields,
            session=ctx.session,
            expected={self.status_field: from_state},
            push={"approval_history": entry}
        )
        return {"history_entry": entry}

    async def _claim_and_apply(self, doc: Dict[str, Any], context: Dict[str, Any], ctx: UnitOfWorkContext) -> Dict[str, Any]:
        # side effects first; the status claim is the unit of work's last write
        applied: Dict[str, Any] = {}
        if self.hooks.apply_approval:
            applied = await self.hooks.apply_approval(ctx, doc, context["actor"]) or {}
        result = await self._claim(doc, context, ctx, extra_fields=applied.pop("fields", None))
        result["applied"] = applied
        return result

    # =========================================================================
    # OPERATIONS
    # =========================================================================

    async def get(self, doc_id, session=None) -> Dict[str, Any]:
        oid = to_object_id(doc_id, self.entity_type)
        doc = await self.collection.find_one({"_id": oid}, session=session)
        if not doc:
            raise NotFoundError(self.entity_type, doc_id)
        return doc

    def _lock_keys(self, doc: Dict[str, Any]) -> List[str]:
        keys = [doc_lock_key(doc["_id"])]
        if self.hooks.lock_keys:
            keys.extend(self.hooks.lock_keys(doc))
        return keys

    async def _run(self, doc_id, actor: Dict[str, Any], target: Callable[[str], str],
                   remarks: Optional[str] = None) -> Dict[str, Any]:
        doc = await self.get(doc_id)
        seen_state = doc[self.status_field]
        async with self.uow.begin(*self._lock_keys(doc)) as ctx:
            doc = await self.get(doc_id, session=ctx.session)
            if not doc.get("is_active", True):
                raise InvalidStateError(f"{self.entity_type} {self._label(doc)} has been deleted")

            from_state = doc[self.status_field]
            if from_state != seen_state:
                raise ConcurrencyConflictError(
                    self.entity_type, doc["_id"],
                    f"{self.entity_type} {self._label(doc)} moved from {seen_state} to "
                    f"{from_state} while this request was waiting. Reload and retry."
                )
            to_state = target(from_state)
            context = {"actor": actor, "remarks": remarks, "ctx": ctx, "to_state": to_state}
            await self.machine.transition(doc, to_state, session=ctx, context=context)

            history = doc["approval_history"][-1]
            ctx.audit(self.entity_type, doc["_id"], history["action"].upper(), actor.get("user_id"),
                      {self.status_field: from_state},
                      {self.status_field: to_state, "remarks": remarks},
                      module_name="APPROVAL")

        logger.info(
            f"[APPROVAL] {self.entity_type} {self._label(doc)}: {from_state} -> {to_state} "
            f"by {actor.get('role')}:{actor.get('user_id')}"
        )
        return doc

    async def submit(self, doc_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        return await self._run(doc_id, actor, lambda _: ApprovalStatus.PENDING_ACCOUNTS)

    async def approve(self, doc_id, actor: Dict[str, Any], remarks: Optional[str] = None) -> Dict[str, Any]:
        return await self._run(
            doc_id, actor,
            lambda state: NEXT_ON_APPROVE.get(state, ApprovalStatus.APPROVED),
            remarks
        )

    async def reject(self, doc_id, actor: Dict[str, Any], remarks: str) -> Dict[str, Any]:
        if not remarks or not remarks.strip():
            raise ValidationError("Remarks are required to reject")
        return await self._run(doc_id, actor, lambda _: ApprovalStatus.REJECTED, remarks.strip())

    async def approval_queue(self, actor: Dict[str, Any], limit: int = 100) -> List[Dict[str, Any]]:
        statuses = queue_statuses_for(actor.get("role"))
        if not statuses:
            return []
        cursor = self.collection.find(
            {self.status_field: {"$in": statuses}, "is_active": True}
        ).sort("created_at", 1).limit(limit)
        return await cursor.to_list(length=limit)

    # =========================================================================
    # DRAFT MAINTENANCE
    # =========================================================================

    def _check_owner(self, doc: Dict[str, Any], actor: Dict[str, Any]) -> None:
        if actor.get("role") != Role.ADMIN and doc.get("created_by") != actor.get("user_id"):
            raise PermissionDeniedError(
                f"Only the creator or an Admin can change {self.entity_type} {self._label(doc)}"
            )

    async def update_draft(
        self,
        doc_id,
        actor: Dict[str, Any],
        fields: Dict[str, Any],
        validate: Optional[ValidateHook] = None
    ) -> Dict[str, Any]:
        doc = await self.get(doc_id)
        async with self.uow.begin(*self._lock_keys(doc)) as ctx:
            doc = await self.get(doc_id, session=ctx.session)
            self._check_owner(doc, actor)
            if doc[self.status_field] != ApprovalStatus.DRAFT or not doc.get("is_active", True):
                raise InvalidStateError(
                    f"Only Draft {self.entity_type.lower()}s can be edited",
                    {"status": doc[self.status_field]}
                )
            if validate:
                await validate(ctx, {**doc, **fields})
            old = {k: doc.get(k) for k in fields}
            await self.version_lock.apply(
                self.entity_type, doc, fields, session=ctx.session,
                expected={self.status_field: ApprovalStatus.DRAFT}
            )
            ctx.audit(self.entity_type, doc["_id"], "UPDATE", actor.get("user_id"), old, fields,
                      module_name="APPROVAL")
        return doc

    async def delete_draft(self, doc_id, actor: Dict[str, Any]) -> Dict[str, Any]:
        """Soft delete; approved or pending documents are never removed."""
        doc = await self.get(doc_id)
        async with self.uow.begin(*self._lock_keys(doc)) as ctx:
            doc = await self.get(doc_id, session=ctx.session)
            self._check_owner(doc, actor)
            status = doc[self.status_field]
            if status not in (ApprovalStatus.DRAFT, ApprovalStatus.REJECTED):
                raise InvalidStateError(
                    f"{self.entity_type} {self._label(doc)} is {status} and cannot be deleted",
                    {"status": status}
                )
            await self.version_lock.apply(
                self.entity_type, doc, {"is_active": False}, session=ctx.session,
                expected={self.status_field: status}
            )
            ctx.audit(self.entity_type, doc["_id"], "DEACTIVATE", actor.get("user_id"),
                      {"is_active": True}, {"is_active": False}, module_name="APPROVAL")
        return doc
