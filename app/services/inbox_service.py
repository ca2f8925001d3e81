from typing import Optional

from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.config import settings
from app.core.errors import InvalidDecision
from app.models.travel_request import TravelRequest
from app.models.user import User
from app.workflow.policy import ApproverRole, RequestStatus, Stage, stage_audit_columns


ROLE_QUEUES: dict[ApproverRole, tuple[RequestStatus, Stage]] = {
    ApproverRole.ADMIN: (RequestStatus.PENDING_ADMIN, Stage.ADMIN),
    ApproverRole.COMPTROLLER: (RequestStatus.PENDING_COMPTROLLER, Stage.COMPTROLLER),
    ApproverRole.HR: (RequestStatus.PENDING_HR, Stage.HR),
    ApproverRole.VP: (RequestStatus.PENDING_VP, Stage.VP),
    ApproverRole.PRESIDENT: (RequestStatus.PENDING_PRESIDENT, Stage.PRESIDENT),
}


class InboxService:
    def _bounded(self, limit: Optional[int]) -> int:
        return min(max(limit or settings.INBOX_LIMIT, 1), 200)

    async def _pending(
        self,
        session: AsyncSession,
        status: RequestStatus,
        stage: Stage,
        limit: int,
        *conditions,
    ) -> list[TravelRequest]:
        acted_at = getattr(TravelRequest, stage_audit_columns(stage).acted_at)
        query = (
            select(TravelRequest)
            .where(
                and_(
                    TravelRequest.status == status.value,
                    acted_at.is_(None),
                    *conditions,
                )
            )
            .order_by(TravelRequest.created_at.desc(), TravelRequest.id.desc())
            .limit(limit)
        )
        result = await session.exec(query)
        return list(result.all())

    async def list_pending(
        self,
        session: AsyncSession,
        user: User,
        role: str,
        limit: Optional[int] = None,
    ) -> list[TravelRequest]:
        """Requests waiting on ``user`` acting as ``role``, newest first."""
        try:
            approver_role = ApproverRole(role)
        except ValueError:
            raise InvalidDecision(f"Unsupported approver role: {role}")

        bounded_limit = self._bounded(limit)

        if approver_role != ApproverRole.HEAD:
            status, stage = ROLE_QUEUES[approver_role]
            return await self._pending(session, status, stage, bounded_limit)

        if user.department_id is None:
            return []

        # Heads never review their own requests at the first stage.
        own_department = await self._pending(
            session,
            RequestStatus.PENDING_HEAD,
            Stage.HEAD,
            bounded_limit,
            TravelRequest.department_id == user.department_id,
            TravelRequest.requester_id != user.id,
        )
        child_departments = await self._pending(
            session,
            RequestStatus.PENDING_PARENT_HEAD,
            Stage.PARENT_HEAD,
            bounded_limit,
            TravelRequest.parent_department_id == user.department_id,
        )
        combined = sorted(
            own_department + child_departments,
            key=lambda row: (row.created_at, row.id or 0),
            reverse=True,
        )
        return combined[:bounded_limit]


inbox_service = InboxService()
