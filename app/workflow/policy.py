"""
Routing rules for travel and seminar requests.

Pure functions only: nothing here touches the database. The approval
service loads a request, asks this module where it goes next, and writes
the answer back.

Default chain::

    pending_head -> [pending_parent_head] -> [pending_admin] -> [pending_comptroller]
                 -> pending_hr -> pending_vp -> [pending_president] -> approved

* ``pending_parent_head`` only when the requester's department has a parent.
* ``pending_comptroller`` only when the request carries a budget; budgeted
  requests skip ``pending_admin``.
* ``pending_president`` when the requester is a head, or when the effective
  budget is strictly above ``PRESIDENT_BUDGET_THRESHOLD``.
"""

from decimal import Decimal
from enum import Enum
from typing import Any, Mapping, NamedTuple, Optional, Union

from app.core.config import settings
from app.core.errors import Unauthorized


class RequestStatus(str, Enum):
    DRAFT = "draft"
    PENDING_HEAD = "pending_head"
    PENDING_PARENT_HEAD = "pending_parent_head"
    PENDING_ADMIN = "pending_admin"
    PENDING_COMPTROLLER = "pending_comptroller"
    PENDING_HR = "pending_hr"
    PENDING_VP = "pending_vp"
    PENDING_PRESIDENT = "pending_president"
    APPROVED = "approved"
    REJECTED = "rejected"
    RETURNED = "returned"
    CANCELLED = "cancelled"


class ApproverRole(str, Enum):
    HEAD = "head"
    ADMIN = "admin"
    COMPTROLLER = "comptroller"
    HR = "hr"
    VP = "vp"
    PRESIDENT = "president"


class Stage(str, Enum):
    HEAD = "head"
    PARENT_HEAD = "parent_head"
    ADMIN = "admin"
    COMPTROLLER = "comptroller"
    HR = "hr"
    VP = "vp"
    PRESIDENT = "president"


class DecisionAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    RETURN = "return"


class StageColumns(NamedTuple):
    acted_at: str
    acted_by: str
    signature: Optional[str]
    comments: str


TERMINAL_STATUSES: frozenset[RequestStatus] = frozenset({
    RequestStatus.APPROVED,
    RequestStatus.REJECTED,
    RequestStatus.CANCELLED,
})

PENDING_STATUSES: frozenset[RequestStatus] = frozenset(
    status for status in RequestStatus if status.value.startswith("pending_")
)

STATUS_STAGES: dict[RequestStatus, Stage] = {
    RequestStatus.PENDING_HEAD: Stage.HEAD,
    RequestStatus.PENDING_PARENT_HEAD: Stage.PARENT_HEAD,
    RequestStatus.PENDING_ADMIN: Stage.ADMIN,
    RequestStatus.PENDING_COMPTROLLER: Stage.COMPTROLLER,
    RequestStatus.PENDING_HR: Stage.HR,
    RequestStatus.PENDING_VP: Stage.VP,
    RequestStatus.PENDING_PRESIDENT: Stage.PRESIDENT,
}

# Parent department heads approve with the ordinary head role.
STAGE_ROLES: dict[Stage, ApproverRole] = {
    Stage.HEAD: ApproverRole.HEAD,
    Stage.PARENT_HEAD: ApproverRole.HEAD,
    Stage.ADMIN: ApproverRole.ADMIN,
    Stage.COMPTROLLER: ApproverRole.COMPTROLLER,
    Stage.HR: ApproverRole.HR,
    Stage.VP: ApproverRole.VP,
    Stage.PRESIDENT: ApproverRole.PRESIDENT,
}

UNSIGNED_STAGES: frozenset[Stage] = frozenset({Stage.ADMIN, Stage.COMPTROLLER})

RequestAttrs = Union[Mapping[str, Any], Any]


def _attr(attrs: RequestAttrs, name: str, default: Any = None) -> Any:
    if isinstance(attrs, Mapping):
        return attrs.get(name, default)
    return getattr(attrs, name, default)


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def effective_budget(attrs: RequestAttrs) -> Decimal:
    """Comptroller's edited figure if present, else the declared total, else zero."""
    edited = _to_decimal(_attr(attrs, "comptroller_edited_budget"))
    if edited is not None:
        return edited
    total = _to_decimal(_attr(attrs, "total_budget"))
    if total is not None:
        return total
    return Decimal("0")


def coerce_status(status: Union[str, RequestStatus]) -> RequestStatus:
    return status if isinstance(status, RequestStatus) else RequestStatus(status)


def stage_for_status(status: Union[str, RequestStatus]) -> Optional[Stage]:
    return STATUS_STAGES.get(coerce_status(status))


def role_for_status(status: Union[str, RequestStatus]) -> Optional[ApproverRole]:
    stage = stage_for_status(status)
    return STAGE_ROLES[stage] if stage else None


def is_terminal(status: Union[str, RequestStatus]) -> bool:
    return coerce_status(status) in TERMINAL_STATUSES


def is_pending(status: Union[str, RequestStatus]) -> bool:
    return coerce_status(status) in PENDING_STATUSES


def can_reject(status: Union[str, RequestStatus]) -> bool:
    return is_pending(status)


def can_return(status: Union[str, RequestStatus]) -> bool:
    return is_pending(status)


def requires_signature(stage: Stage) -> bool:
    return stage not in UNSIGNED_STAGES


def stage_audit_columns(stage: Stage) -> StageColumns:
    prefix = stage.value
    if stage == Stage.ADMIN:
        return StageColumns(
            acted_at="admin_processed_at",
            acted_by="admin_processed_by",
            signature=None,
            comments="admin_comments",
        )
    return StageColumns(
        acted_at=f"{prefix}_approved_at",
        acted_by=f"{prefix}_approved_by",
        signature=f"{prefix}_signature" if requires_signature(stage) else None,
        comments=f"{prefix}_comments",
    )


def _after_head_chain(attrs: RequestAttrs) -> RequestStatus:
    if _attr(attrs, "has_budget", False):
        return RequestStatus.PENDING_COMPTROLLER
    return RequestStatus.PENDING_ADMIN


def next_status_after_approval(
    status: Union[str, RequestStatus],
    role: Union[str, ApproverRole],
    attrs: RequestAttrs,
    threshold: Optional[Decimal] = None,
) -> RequestStatus:
    current = coerce_status(status)
    try:
        actor_role = ApproverRole(role)
    except ValueError:
        raise Unauthorized(str(role), current.value)

    if role_for_status(current) != actor_role:
        raise Unauthorized(actor_role.value, current.value)

    if current == RequestStatus.PENDING_HEAD:
        if _attr(attrs, "parent_department_id") is not None:
            return RequestStatus.PENDING_PARENT_HEAD
        return _after_head_chain(attrs)

    if current == RequestStatus.PENDING_PARENT_HEAD:
        return _after_head_chain(attrs)

    if current == RequestStatus.PENDING_ADMIN:
        if _attr(attrs, "has_budget", False):
            return RequestStatus.PENDING_COMPTROLLER
        return RequestStatus.PENDING_HR

    if current == RequestStatus.PENDING_COMPTROLLER:
        return RequestStatus.PENDING_HR

    if current == RequestStatus.PENDING_HR:
        return RequestStatus.PENDING_VP

    if current == RequestStatus.PENDING_VP:
        if _attr(attrs, "requester_is_head", False):
            return RequestStatus.PENDING_PRESIDENT
        limit = threshold if threshold is not None else settings.PRESIDENT_BUDGET_THRESHOLD
        if effective_budget(attrs) > limit:
            return RequestStatus.PENDING_PRESIDENT
        return RequestStatus.APPROVED

    # pending_president
    return RequestStatus.APPROVED
