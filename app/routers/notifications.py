from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app.db.engine import get_session
from app.models.notification import Notification
from app.models.user import User
from app.routers.users import get_current_user
from app.services.notification_service import notification_service


router = APIRouter(prefix="/notifications", tags=["notifications"])


class MarkReadBody(BaseModel):
    notification_ids: list[int]


def _serialize_notification(row: Notification) -> dict[str, Any]:
    return {
        "id": row.id,
        "notification_type": row.notification_type,
        "title": row.title,
        "message": row.message,
        "related_type": row.related_type,
        "related_id": row.related_id,
        "action_url": row.action_url,
        "action_label": row.action_label,
        "priority": row.priority,
        "is_read": row.is_read,
        "read_at": row.read_at,
        "created_at": row.created_at,
    }


@router.get("")
async def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")

    rows = await notification_service.list_for_user(
        session=session,
        user_id=user.id,
        unread_only=unread_only,
        limit=limit,
    )
    return {"notifications": [_serialize_notification(row) for row in rows]}


@router.post("/read")
async def mark_notifications_read(
    body: MarkReadBody,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")

    updated = await notification_service.mark_read(session, user.id, body.notification_ids)
    return {"updated": updated}
