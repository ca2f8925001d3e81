from typing import Any, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import ApprovalError
from app.core.rbac import require_role
from app.db.engine import get_session
from app.models.travel_request import TravelRequest
from app.models.user import User
from app.routers.users import get_current_user
from app.services.approval_service import DecisionPayload, approval_service
from app.services.budget_service import budget_service
from app.services.inbox_service import inbox_service
from app.services.request_store import request_store
from app.workflow.policy import ApproverRole, effective_budget


router = APIRouter(prefix="/requests", tags=["requests"])


ERROR_STATUS_CODES: dict[str, int] = {
    "not_found": 404,
    "unauthorized": 403,
    "already_processed": 409,
    "invalid_decision": 400,
    "signature_required": 400,
    "timeout": 504,
    "persistence_error": 503,
}


class DecisionBody(DecisionPayload):
    role: str
    action: str


class BudgetEditBody(BaseModel):
    edited_budget: dict[str, Optional[float]]
    comments: Optional[str] = None


def _raise_for_error(code: Optional[str], message: Optional[str]) -> None:
    raise HTTPException(status_code=ERROR_STATUS_CODES.get(code or "", 400), detail={"error": code, "message": message})


def _serialize_request(request_row: TravelRequest) -> dict[str, Any]:
    data = request_row.model_dump(exclude={"expense_breakdown", "workflow_metadata"})
    data["expense_breakdown"] = request_store.parse_expense_breakdown(request_row)
    data["workflow_metadata"] = request_store.parse_workflow_metadata(request_row)
    data["effective_budget"] = float(effective_budget(request_row))
    return data


@router.get("/inbox")
async def list_inbox(
    role: str,
    limit: Optional[int] = None,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    approver_role = require_role(user, role)
    rows = await inbox_service.list_pending(session, user, approver_role.value, limit=limit)
    return {
        "role": approver_role.value,
        "requests": [_serialize_request(row) for row in rows],
    }


@router.get("/{request_id}")
async def get_request(
    request_id: int,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")

    request_row = await request_store.get_request(session, request_id)
    if not request_row:
        raise HTTPException(status_code=404, detail="Request not found")
    return _serialize_request(request_row)


@router.post("/{request_id}/decision")
async def submit_decision(
    request_id: int,
    body: DecisionBody,
    background_tasks: BackgroundTasks,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    approver_role = require_role(user, body.role)

    result = await approval_service.submit_decision(
        session=session,
        request_id=request_id,
        actor_id=user.id,
        role=approver_role.value,
        action=body.action,
        payload=DecisionPayload(**body.model_dump(exclude={"role", "action"})),
    )
    if not result.success:
        _raise_for_error(result.error, result.message)
    # Notifications go out after the response is sent.
    background_tasks.add_task(approval_service.drain)
    return result


@router.patch("/{request_id}/budget")
async def update_budget(
    request_id: int,
    body: BudgetEditBody,
    session: AsyncSession = Depends(get_session),
    user: User = Depends(get_current_user),
):
    require_role(user, ApproverRole.COMPTROLLER.value)

    try:
        new_total = await budget_service.update_budget(
            session=session,
            request_id=request_id,
            actor_id=user.id,
            edits=body.edited_budget,
            comments=body.comments,
        )
    except ApprovalError as exc:
        _raise_for_error(exc.code, exc.message)

    return {"request_id": request_id, "comptroller_edited_budget": float(new_total)}
