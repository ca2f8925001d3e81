import asyncio
import json
import logging
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.errors import (
    AlreadyProcessed,
    ApprovalError,
    InvalidDecision,
    PersistenceError,
    RequestNotFound,
    RequestTimeout,
    SignatureRequired,
    Unauthorized,
)
from app.models.travel_request import TravelRequest
from app.models.user import User
from app.services.budget_service import budget_edit_fields
from app.services.notification_service import NotificationService, notification_service
from app.services.request_events import RequestEventBus, RequestStateChanged, request_events
from app.services.request_store import RequestStore, request_store
from app.workflow.policy import (
    STAGE_ROLES,
    ApproverRole,
    DecisionAction,
    RequestStatus,
    Stage,
    can_reject,
    can_return,
    coerce_status,
    is_terminal,
    next_status_after_approval,
    stage_audit_columns,
    stage_for_status,
)


logger = logging.getLogger(__name__)


class DecisionPayload(BaseModel):
    signature: Optional[str] = None
    comments: Optional[str] = None
    rejection_reason: Optional[str] = None
    return_reason: Optional[str] = None
    next_approver_id: Optional[int] = None
    next_approver_role: Optional[str] = None
    edited_budget: Optional[dict[str, Optional[float]]] = None


class DecisionResult(BaseModel):
    success: bool
    request_id: int
    action: Optional[str] = None
    previous_status: Optional[str] = None
    new_status: Optional[str] = None
    error: Optional[str] = None
    message: Optional[str] = None


class ApprovalService:
    def __init__(
        self,
        store: Optional[RequestStore] = None,
        notifier: Optional[NotificationService] = None,
        events: Optional[RequestEventBus] = None,
        load_timeout: Optional[float] = None,
    ):
        self.store = store or request_store
        self.notifier = notifier or notification_service
        self.events = events or request_events
        self.load_timeout = load_timeout
        self._follow_ups: set[asyncio.Future] = set()

    def _normalize_action(self, action: str) -> DecisionAction:
        try:
            return DecisionAction(str(action).strip().lower())
        except ValueError:
            raise InvalidDecision(f"Unsupported decision action: {action}")

    def _normalize_role(self, role: str) -> ApproverRole:
        try:
            return ApproverRole(str(role).strip().lower())
        except ValueError:
            raise InvalidDecision(f"Unsupported approver role: {role}")

    async def _guarded_load(self, lookup, request_id: int, what: str):
        timeout = self.load_timeout if self.load_timeout is not None else settings.REQUEST_LOAD_TIMEOUT_SECONDS
        try:
            return await asyncio.wait_for(lookup, timeout=timeout)
        except asyncio.TimeoutError:
            raise RequestTimeout(request_id, timeout)
        except SQLAlchemyError as exc:
            raise PersistenceError(f"Failed to load {what} for request {request_id}", request_id=request_id) from exc

    async def _load_request(self, session: AsyncSession, request_id: int) -> TravelRequest:
        request_row = await self._guarded_load(self.store.get_request(session, request_id), request_id, "request")
        if not request_row:
            raise RequestNotFound(request_id)
        return request_row

    async def _load_actor(
        self,
        session: AsyncSession,
        request_row: TravelRequest,
        actor_id: int,
        role: ApproverRole,
    ) -> User:
        actor = await self._guarded_load(self.store.get_user(session, actor_id), request_row.id, "actor")
        if not actor or not actor.is_active:
            raise Unauthorized(role.value, request_row.status, request_id=request_row.id)
        return actor

    def _already_signed_by(self, request_row: TravelRequest, role: ApproverRole, actor: User) -> bool:
        """True when ``actor`` stamped one of the stages owned by ``role``."""
        for stage, stage_role in STAGE_ROLES.items():
            if stage_role != role:
                continue
            columns = stage_audit_columns(stage)
            if getattr(request_row, columns.acted_at) is not None and getattr(request_row, columns.acted_by) == actor.id:
                return True
        return False

    def _check_department(self, request_row: TravelRequest, stage: Stage, actor: User) -> None:
        if stage == Stage.HEAD:
            expected = request_row.department_id
        elif stage == Stage.PARENT_HEAD:
            expected = request_row.parent_department_id
        else:
            return
        if expected is not None and actor.department_id != expected:
            raise Unauthorized(ApproverRole.HEAD.value, request_row.status, request_id=request_row.id)

    def _approve_fields(
        self,
        request_row: TravelRequest,
        current: RequestStatus,
        role: ApproverRole,
        actor: User,
        payload: DecisionPayload,
        now: datetime,
    ) -> tuple[RequestStatus, str, dict[str, Any]]:
        stage = stage_for_status(current)
        if stage is None or STAGE_ROLES[stage] != role:
            if is_terminal(current) or current == RequestStatus.RETURNED:
                raise AlreadyProcessed(request_row.id, current.value)
            if self._already_signed_by(request_row, role, actor):
                raise AlreadyProcessed(request_row.id, current.value)
            raise Unauthorized(role.value, current.value, request_id=request_row.id)

        columns = stage_audit_columns(stage)
        if getattr(request_row, columns.acted_at) is not None:
            raise AlreadyProcessed(request_row.id, current.value)
        if stage == Stage.PARENT_HEAD and request_row.head_approved_by == actor.id:
            raise AlreadyProcessed(request_row.id, current.value)
        self._check_department(request_row, stage, actor)

        try:
            next_status = next_status_after_approval(current, role, request_row)
        except Unauthorized as exc:
            exc.request_id = request_row.id
            raise

        fields: dict[str, Any] = {
            "status": next_status.value,
            columns.acted_at: now,
            columns.acted_by: actor.id,
        }
        if columns.signature:
            if not payload.signature:
                raise SignatureRequired(stage.value, request_id=request_row.id)
            fields[columns.signature] = payload.signature
        if payload.comments:
            fields[columns.comments] = payload.comments

        if stage in (Stage.HEAD, Stage.PARENT_HEAD) and (payload.next_approver_id or payload.next_approver_role):
            metadata = self.store.parse_workflow_metadata(request_row)
            metadata.update({
                "next_approver_id": payload.next_approver_id,
                "next_approver_role": payload.next_approver_role,
            })
            fields["workflow_metadata"] = json.dumps(metadata, ensure_ascii=True)

        if stage == Stage.COMPTROLLER and payload.edited_budget:
            fields.update(
                budget_edit_fields(self.store.parse_expense_breakdown(request_row), payload.edited_budget)
            )

        return next_status, columns.acted_at, fields

    def _closing_fields(
        self,
        request_row: TravelRequest,
        current: RequestStatus,
        role: ApproverRole,
        action: DecisionAction,
        actor: User,
        payload: DecisionPayload,
        now: datetime,
    ) -> tuple[RequestStatus, Optional[str], dict[str, Any]]:
        if is_terminal(current) or current == RequestStatus.RETURNED:
            raise AlreadyProcessed(request_row.id, current.value)

        allowed = can_reject(current) if action == DecisionAction.REJECT else can_return(current)
        if not allowed:
            raise Unauthorized(role.value, current.value, request_id=request_row.id)

        if action == DecisionAction.REJECT:
            fields = {
                "status": RequestStatus.REJECTED.value,
                "rejected_at": now,
                "rejected_by": actor.id,
                "rejection_reason": payload.rejection_reason or payload.comments or "No reason provided",
                "rejection_stage": role.value,
            }
            return RequestStatus.REJECTED, "rejected_at", fields

        reason = payload.return_reason or payload.comments
        fields = {
            "status": RequestStatus.RETURNED.value,
            "returned_at": now,
            "returned_by": actor.id,
            "return_reason": reason,
            "return_stage": role.value,
        }
        holding_stage = stage_for_status(current)
        stage = holding_stage if holding_stage and STAGE_ROLES[holding_stage] == role else Stage(role.value)
        if reason:
            fields[stage_audit_columns(stage).comments] = reason
        # A resubmitted request may be returned again; the status match is the guard.
        return RequestStatus.RETURNED, None, fields

    async def decide(
        self,
        session: AsyncSession,
        request_id: int,
        actor_id: int,
        role: str,
        action: str,
        payload: Optional[DecisionPayload] = None,
    ) -> DecisionResult:
        payload = payload or DecisionPayload()
        decision = self._normalize_action(action)
        actor_role = self._normalize_role(role)

        request_row = await self._load_request(session, request_id)
        actor = await self._load_actor(session, request_row, actor_id, actor_role)

        try:
            current = coerce_status(request_row.status)
        except ValueError:
            raise Unauthorized(actor_role.value, request_row.status, request_id=request_id)

        now = datetime.utcnow()
        if decision == DecisionAction.APPROVE:
            next_status, guard_column, fields = self._approve_fields(
                request_row, current, actor_role, actor, payload, now
            )
        else:
            next_status, guard_column, fields = self._closing_fields(
                request_row, current, actor_role, decision, actor, payload, now
            )
        fields["updated_at"] = now
        notice = {
            "request_id": request_id,
            "request_number": request_row.request_number,
            "requester_id": request_row.requester_id,
            "requester_name": request_row.requester_name,
            "parent_department_id": request_row.parent_department_id,
            "actor_id": actor.id,
            "actor_name": actor.name or actor.email,
        }

        written = await self.store.update_request(
            session,
            request_id,
            fields,
            expected_status=current.value,
            guard_column=guard_column,
        )
        if not written:
            raise AlreadyProcessed(request_id)

        logger.info(
            "Request %s %s by user_id=%s (%s): %s -> %s",
            request_id,
            decision.value,
            actor_id,
            actor_role.value,
            current.value,
            next_status.value,
        )

        # Fire and forget; the set holds the task until it finishes.
        follow_up = asyncio.ensure_future(
            self._after_commit(notice, actor_role, decision, current, next_status)
        )
        self._follow_ups.add(follow_up)
        follow_up.add_done_callback(self._follow_ups.discard)

        return DecisionResult(
            success=True,
            request_id=request_id,
            action=decision.value,
            previous_status=current.value,
            new_status=next_status.value,
        )

    async def _after_commit(
        self,
        notice: dict[str, Any],
        role: ApproverRole,
        decision: DecisionAction,
        previous_status: RequestStatus,
        new_status: RequestStatus,
    ) -> None:
        try:
            await self.events.publish(
                RequestStateChanged(
                    request_id=notice["request_id"],
                    previous_status=previous_status.value,
                    new_status=new_status.value,
                    action=decision.value,
                    actor_id=notice["actor_id"],
                    role=role.value,
                )
            )
            await self.notifier.dispatch(
                request_id=notice["request_id"],
                request_number=notice["request_number"],
                requester_id=notice["requester_id"],
                requester_name=notice["requester_name"],
                prior_action=decision.value,
                prior_actor_name=notice["actor_name"],
                prior_role=role.value,
                new_status=new_status.value,
                parent_department_id=notice["parent_department_id"],
                actor_id=notice["actor_id"],
            )
        except Exception as exc:
            logger.warning("Post-decision follow-up failed for request_id=%s: %s", notice["request_id"], exc)

    async def drain(self) -> None:
        """Wait for scheduled post-decision follow-ups (events and notifications)."""
        while self._follow_ups:
            await asyncio.gather(*list(self._follow_ups), return_exceptions=True)

    async def submit_decision(
        self,
        session: AsyncSession,
        request_id: int,
        actor_id: int,
        role: str,
        action: str,
        payload: Optional[DecisionPayload] = None,
    ) -> DecisionResult:
        """Single entry point for approve / reject / return. Never raises for workflow failures."""
        try:
            return await self.decide(
                session=session,
                request_id=request_id,
                actor_id=actor_id,
                role=role,
                action=action,
                payload=payload,
            )
        except ApprovalError as exc:
            logger.warning(
                "Decision %s by user_id=%s (%s) on request_id=%s failed: %s",
                action,
                actor_id,
                role,
                request_id,
                exc,
            )
            return DecisionResult(
                success=False,
                request_id=request_id,
                action=str(action),
                error=exc.code,
                message=exc.message,
            )


approval_service = ApprovalService()
