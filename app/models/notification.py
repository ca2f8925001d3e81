from datetime import datetime
from enum import Enum
from typing import Optional

from sqlmodel import Field, SQLModel


class NotificationPriority(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"


class Notification(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="user.id", index=True)
    notification_type: str = Field(index=True)
    title: str
    message: str

    related_type: Optional[str] = Field(default=None, index=True)
    related_id: Optional[str] = Field(default=None, index=True)
    action_url: Optional[str] = None
    action_label: Optional[str] = None
    priority: str = Field(default=NotificationPriority.NORMAL.value)

    is_read: bool = Field(default=False, index=True)
    read_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=datetime.utcnow, index=True)
