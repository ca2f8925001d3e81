import asyncio
import logging
from datetime import datetime
from typing import Any, Iterable, Optional

from sqlalchemy import update
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import NotificationError
from app.db.engine import async_session_factory
from app.models.notification import Notification, NotificationPriority
from app.models.user import User
from app.services.request_store import request_store
from app.workflow.policy import DecisionAction, RequestStatus, coerce_status


logger = logging.getLogger(__name__)


ROLE_LABELS: dict[str, str] = {
    "head": "Department Head",
    "parent_head": "Parent Head",
    "admin": "Administrator",
    "comptroller": "Comptroller",
    "hr": "HR",
    "vp": "VP",
    "president": "President",
}

# Statuses whose reviewers are looked up by a user role flag. At most one
# HR/VP/President is expected; every comptroller shares the queue.
REVIEWER_FLAGS: dict[RequestStatus, tuple[str, str, Optional[int]]] = {
    RequestStatus.PENDING_COMPTROLLER: ("comptroller", "is_comptroller", None),
    RequestStatus.PENDING_HR: ("hr", "is_hr", 1),
    RequestStatus.PENDING_VP: ("vp", "is_vp", 1),
    RequestStatus.PENDING_PRESIDENT: ("president", "is_president", 1),
}

OUTCOMES: dict[str, tuple[str, str, str, NotificationPriority]] = {
    "approved": ("request_approved", "Request Approved", "has been approved by", NotificationPriority.NORMAL),
    "rejected": ("request_rejected", "Request Rejected", "has been rejected by", NotificationPriority.HIGH),
    "returned": ("request_returned", "Request Returned", "has been returned by", NotificationPriority.NORMAL),
}


def role_label(role: Optional[str]) -> str:
    if not role:
        return "Approver"
    return ROLE_LABELS.get(role, role)


class NotificationService:
    def __init__(self, session_factory=None):
        self._session_factory = session_factory or async_session_factory

    async def create_notification(
        self,
        user_id: int,
        notification_type: str,
        title: str,
        message: str,
        related_type: Optional[str] = None,
        related_id: Optional[str] = None,
        action_url: Optional[str] = None,
        action_label: Optional[str] = None,
        priority: NotificationPriority = NotificationPriority.NORMAL,
    ) -> Notification:
        async with self._session_factory() as notification_session:
            row = Notification(
                user_id=user_id,
                notification_type=notification_type,
                title=title,
                message=message,
                related_type=related_type,
                related_id=related_id,
                action_url=action_url,
                action_label=action_label,
                priority=NotificationPriority(priority).value,
            )
            notification_session.add(row)
            try:
                await notification_session.commit()
            except Exception as exc:
                await notification_session.rollback()
                raise NotificationError(f"Failed to notify user {user_id}: {exc}") from exc
            await notification_session.refresh(row)
            return row

    async def notify_requester(
        self,
        requester_id: int,
        request_id: int,
        request_number: str,
        outcome: str,
        actor_name: str,
        actor_role: Optional[str],
    ) -> Notification:
        notification_type, title, verb, priority = OUTCOMES[outcome]
        message = f"Your request {request_number} {verb} {actor_name} ({role_label(actor_role)})"
        message += " for revision." if outcome == "returned" else "."
        return await self.create_notification(
            user_id=requester_id,
            notification_type=notification_type,
            title=title,
            message=message,
            related_type="request",
            related_id=str(request_id),
            action_url=f"/request/{request_id}",
            priority=priority,
        )

    async def notify_next_approver(
        self,
        approver_id: int,
        request_id: int,
        request_number: str,
        requester_name: str,
        role: str,
    ) -> Notification:
        return await self.create_notification(
            user_id=approver_id,
            notification_type="request_pending_review",
            title="New Request for Review",
            message=f"Request {request_number} from {requester_name} is pending your {role_label(role)} review.",
            related_type="request",
            related_id=str(request_id),
            action_url=f"/review/{request_id}?role={role}",
            priority=NotificationPriority.HIGH,
        )

    async def resolve_reviewers(
        self,
        new_status: RequestStatus,
        parent_department_id: Optional[int] = None,
    ) -> tuple[Optional[str], list[User]]:
        if new_status == RequestStatus.PENDING_PARENT_HEAD:
            if parent_department_id is None:
                return "head", []
            async with self._session_factory() as lookup_session:
                return "head", await request_store.get_department_heads(lookup_session, parent_department_id)

        # pending_admin is processed by the system; nobody is paged for it.
        if new_status not in REVIEWER_FLAGS:
            return None, []

        role, flag, limit = REVIEWER_FLAGS[new_status]
        async with self._session_factory() as lookup_session:
            users = await request_store.get_users_by_role_flag(
                lookup_session,
                flag,
                active_only=True,
                limit=limit,
            )
        return role, users

    async def _attempt_all(self, label: str, request_id: int, attempts: Iterable[tuple[int, Any]]) -> int:
        attempts = list(attempts)
        results = await asyncio.gather(*(coro for _, coro in attempts), return_exceptions=True)
        delivered = 0
        for (user_id, _), result in zip(attempts, results):
            if isinstance(result, BaseException):
                logger.warning(
                    "Failed to send %s notification to user_id=%s for request_id=%s: %s",
                    label,
                    user_id,
                    request_id,
                    result,
                )
            else:
                delivered += 1
        return delivered

    async def dispatch(
        self,
        request_id: int,
        request_number: Optional[str],
        requester_id: Optional[int],
        requester_name: Optional[str],
        prior_action: str,
        prior_actor_name: Optional[str],
        prior_role: Optional[str],
        new_status: str,
        parent_department_id: Optional[int] = None,
        actor_id: Optional[int] = None,
    ) -> int:
        """Best-effort fan-out after a decision. Returns the number delivered; never raises."""
        number = request_number or "DRAFT"
        try:
            status = coerce_status(new_status)
            action = DecisionAction(prior_action)

            if action == DecisionAction.APPROVE and status != RequestStatus.APPROVED:
                role, reviewers = await self.resolve_reviewers(status, parent_department_id)
                recipients = [user for user in reviewers if user.id != actor_id]
                if role and not recipients:
                    logger.warning("No active %s reviewers to notify for request_id=%s", role, request_id)
                return await self._attempt_all(
                    "pending review",
                    request_id,
                    (
                        (
                            user.id,
                            self.notify_next_approver(
                                approver_id=user.id,
                                request_id=request_id,
                                request_number=number,
                                requester_name=requester_name or "Requester",
                                role=role,
                            ),
                        )
                        for user in recipients
                    ),
                )

            if requester_id is None:
                return 0

            outcome = {
                DecisionAction.APPROVE: "approved",
                DecisionAction.REJECT: "rejected",
                DecisionAction.RETURN: "returned",
            }[action]
            return await self._attempt_all(
                outcome,
                request_id,
                [
                    (
                        requester_id,
                        self.notify_requester(
                            requester_id=requester_id,
                            request_id=request_id,
                            request_number=number,
                            outcome=outcome,
                            actor_name=prior_actor_name or "Approver",
                            actor_role=prior_role,
                        ),
                    )
                ],
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning(
                "Notification dispatch failed for request_id=%s status=%s: %s",
                request_id,
                new_status,
                exc,
            )
            return 0

    async def list_for_user(
        self,
        session: AsyncSession,
        user_id: int,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Notification]:
        bounded_limit = min(max(limit, 1), 200)
        query = select(Notification).where(Notification.user_id == user_id)
        if unread_only:
            query = query.where(Notification.is_read == False)  # noqa: E712
        query = query.order_by(Notification.created_at.desc(), Notification.id.desc()).limit(bounded_limit)
        result = await session.exec(query)
        return list(result.all())

    async def mark_read(
        self,
        session: AsyncSession,
        user_id: int,
        notification_ids: list[int],
    ) -> int:
        if not notification_ids:
            return 0
        result = await session.execute(
            update(Notification)
            .where(
                and_(
                    Notification.user_id == user_id,
                    Notification.id.in_(notification_ids),
                    Notification.is_read == False,  # noqa: E712
                )
            )
            .values(is_read=True, read_at=datetime.utcnow())
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount


notification_service = NotificationService()
