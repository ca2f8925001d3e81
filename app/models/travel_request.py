from datetime import datetime
from typing import Optional

from sqlmodel import Field, SQLModel


class TravelRequest(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    request_number: Optional[str] = Field(default=None, index=True)
    request_type: str = Field(default="travel_order", index=True)
    title: Optional[str] = None
    purpose: Optional[str] = None
    destination: Optional[str] = None

    requester_id: int = Field(foreign_key="user.id", index=True)
    requester_name: Optional[str] = None
    requester_is_head: bool = Field(default=False)
    department_id: Optional[int] = Field(default=None, foreign_key="department.id", index=True)
    parent_department_id: Optional[int] = Field(default=None, foreign_key="department.id", index=True)

    has_budget: bool = Field(default=False)
    total_budget: Optional[float] = None
    comptroller_edited_budget: Optional[float] = None
    expense_breakdown: str = Field(default="[]")

    status: str = Field(default="draft", index=True)

    head_approved_at: Optional[datetime] = None
    head_approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    head_signature: Optional[str] = None
    head_comments: Optional[str] = None

    parent_head_approved_at: Optional[datetime] = None
    parent_head_approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    parent_head_signature: Optional[str] = None
    parent_head_comments: Optional[str] = None

    admin_processed_at: Optional[datetime] = None
    admin_processed_by: Optional[int] = Field(default=None, foreign_key="user.id")
    admin_comments: Optional[str] = None

    comptroller_approved_at: Optional[datetime] = None
    comptroller_approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    comptroller_comments: Optional[str] = None

    hr_approved_at: Optional[datetime] = None
    hr_approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    hr_signature: Optional[str] = None
    hr_comments: Optional[str] = None

    vp_approved_at: Optional[datetime] = None
    vp_approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    vp_signature: Optional[str] = None
    vp_comments: Optional[str] = None

    president_approved_at: Optional[datetime] = None
    president_approved_by: Optional[int] = Field(default=None, foreign_key="user.id")
    president_signature: Optional[str] = None
    president_comments: Optional[str] = None

    rejected_at: Optional[datetime] = None
    rejected_by: Optional[int] = Field(default=None, foreign_key="user.id")
    rejection_reason: Optional[str] = None
    rejection_stage: Optional[str] = None

    returned_at: Optional[datetime] = None
    returned_by: Optional[int] = Field(default=None, foreign_key="user.id")
    return_reason: Optional[str] = None
    return_stage: Optional[str] = None

    workflow_metadata: str = Field(default="{}")

    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
    updated_at: datetime = Field(
        default_factory=datetime.utcnow,
        sa_column_kwargs={"onupdate": datetime.utcnow},
    )
