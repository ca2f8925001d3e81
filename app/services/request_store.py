import json
import logging
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import and_, select
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import PersistenceError
from app.models.travel_request import TravelRequest
from app.models.user import User


logger = logging.getLogger(__name__)


ROLE_FLAGS = {
    "is_head",
    "is_admin",
    "is_comptroller",
    "is_hr",
    "is_vp",
    "is_president",
}


class RequestStore:
    async def get_request(
        self,
        session: AsyncSession,
        request_id: int,
    ) -> Optional[TravelRequest]:
        # Always hit the database; a row cached in the identity map may be stale.
        result = await session.exec(
            select(TravelRequest)
            .where(TravelRequest.id == request_id)
            .execution_options(populate_existing=True)
        )
        return result.first()

    async def update_request(
        self,
        session: AsyncSession,
        request_id: int,
        fields: dict[str, Any],
        expected_status: Optional[str] = None,
        guard_column: Optional[str] = None,
    ) -> bool:
        """Write ``fields`` to one row if it still matches what the caller read.

        The row is only written while ``status`` equals ``expected_status`` and
        ``guard_column`` is still NULL. Returns False when another writer got
        there first.
        """
        conditions = [TravelRequest.id == request_id]
        if expected_status is not None:
            conditions.append(TravelRequest.status == expected_status)
        if guard_column is not None:
            conditions.append(getattr(TravelRequest, guard_column).is_(None))

        statement = (
            update(TravelRequest)
            .where(and_(*conditions))
            .values(**fields)
            .execution_options(synchronize_session=False)
        )

        try:
            result = await session.execute(statement)
            if result.rowcount != 1:
                await session.rollback()
                return False
            await session.commit()
        except SQLAlchemyError as exc:
            await session.rollback()
            logger.error("Request update failed for request_id=%s: %s", request_id, exc)
            raise PersistenceError(f"Failed to update request {request_id}", request_id=request_id) from exc
        return True

    async def get_user(self, session: AsyncSession, user_id: int) -> Optional[User]:
        return await session.get(User, user_id)

    async def get_users_by_role_flag(
        self,
        session: AsyncSession,
        flag: str,
        active_only: bool = True,
        limit: Optional[int] = None,
    ) -> list[User]:
        if flag not in ROLE_FLAGS:
            raise ValueError(f"Unsupported role flag: {flag}")

        query = select(User).where(getattr(User, flag) == True)  # noqa: E712
        if active_only:
            query = query.where(User.is_active == True)  # noqa: E712
        query = query.order_by(User.id)
        if limit is not None:
            query = query.limit(limit)
        result = await session.exec(query)
        return list(result.all())

    async def get_department_heads(
        self,
        session: AsyncSession,
        department_id: int,
        active_only: bool = True,
    ) -> list[User]:
        query = select(User).where(
            and_(
                User.is_head == True,  # noqa: E712
                User.department_id == department_id,
            )
        )
        if active_only:
            query = query.where(User.is_active == True)  # noqa: E712
        result = await session.exec(query.order_by(User.id))
        return list(result.all())

    def parse_expense_breakdown(self, request_row: TravelRequest) -> list[dict[str, Any]]:
        try:
            parsed = json.loads(request_row.expense_breakdown or "[]")
        except (TypeError, ValueError):
            return []
        return [item for item in parsed if isinstance(item, dict)] if isinstance(parsed, list) else []

    def parse_workflow_metadata(self, request_row: TravelRequest) -> dict[str, Any]:
        try:
            parsed = json.loads(request_row.workflow_metadata or "{}")
        except (TypeError, ValueError):
            return {}
        return parsed if isinstance(parsed, dict) else {}


request_store = RequestStore()
