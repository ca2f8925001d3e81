import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional

from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.errors import AlreadyProcessed, InvalidDecision, RequestNotFound, Unauthorized
from app.services.request_store import RequestStore, request_store
from app.workflow.policy import ApproverRole, RequestStatus, is_terminal


logger = logging.getLogger(__name__)


def _amount(value: Any) -> Decimal:
    if value is None or value == "":
        return Decimal("0")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidDecision(f"Invalid budget amount: {value!r}")
    if amount < 0:
        raise InvalidDecision(f"Budget amounts cannot be negative: {value!r}")
    return amount


def apply_budget_edits(
    breakdown: list[dict[str, Any]],
    edits: Mapping[str, Any],
) -> tuple[list[dict[str, Any]], Decimal]:
    """Overwrite per-category amounts and return the new breakdown and its total.

    Categories match case-insensitively. A null amount zeroes the line;
    categories not present in the breakdown are ignored.
    """
    normalized = {str(category).strip().lower(): _amount(amount) for category, amount in edits.items()}

    updated: list[dict[str, Any]] = []
    total = Decimal("0")
    for item in breakdown:
        category = str(item.get("category") or "").strip().lower()
        line = dict(item)
        if category in normalized:
            line["amount"] = float(normalized[category])
        total += _amount(line.get("amount"))
        updated.append(line)

    unknown = set(normalized) - {str(item.get("category") or "").strip().lower() for item in breakdown}
    if unknown:
        logger.debug("Ignoring budget edits for unknown categories: %s", sorted(unknown))
    return updated, total


def budget_edit_fields(
    breakdown: list[dict[str, Any]],
    edits: Optional[Mapping[str, Any]],
) -> dict[str, Any]:
    if not edits:
        return {}
    updated, total = apply_budget_edits(breakdown, edits)
    return {
        "expense_breakdown": json.dumps(updated, ensure_ascii=True),
        "comptroller_edited_budget": float(total),
    }


class BudgetService:
    def __init__(self, store: Optional[RequestStore] = None):
        self.store = store or request_store

    async def update_budget(
        self,
        session: AsyncSession,
        request_id: int,
        actor_id: int,
        edits: Mapping[str, Any],
        comments: Optional[str] = None,
    ) -> Decimal:
        """Comptroller edit of the expense breakdown while the request waits on budget review.

        ``total_budget`` keeps the requester's declared figure; the edited total
        lands in ``comptroller_edited_budget``.
        """
        request_row = await self.store.get_request(session, request_id)
        if not request_row:
            raise RequestNotFound(request_id)

        if request_row.comptroller_approved_at is not None or is_terminal(request_row.status):
            raise AlreadyProcessed(request_id, request_row.status)
        if request_row.status != RequestStatus.PENDING_COMPTROLLER.value:
            raise Unauthorized(ApproverRole.COMPTROLLER.value, request_row.status, request_id=request_id)

        fields = budget_edit_fields(self.store.parse_expense_breakdown(request_row), edits)
        if not fields:
            raise InvalidDecision("No budget edits supplied", request_id=request_id)
        if comments:
            fields["comptroller_comments"] = comments

        written = await self.store.update_request(
            session,
            request_id,
            fields,
            expected_status=RequestStatus.PENDING_COMPTROLLER.value,
            guard_column="comptroller_approved_at",
        )
        if not written:
            raise AlreadyProcessed(request_id)

        logger.info(
            "Comptroller user_id=%s edited budget for request_id=%s to %s",
            actor_id,
            request_id,
            fields["comptroller_edited_budget"],
        )
        return Decimal(str(fields["comptroller_edited_budget"]))


budget_service = BudgetService()
