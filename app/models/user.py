from typing import Optional
from sqlmodel import Field, SQLModel
from datetime import datetime

class User(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(unique=True, index=True)
    name: Optional[str] = None
    position_title: Optional[str] = None
    department_id: Optional[int] = Field(default=None, foreign_key="department.id", index=True)
    is_active: bool = Field(default=True)

    is_head: bool = Field(default=False)
    is_admin: bool = Field(default=False)
    is_comptroller: bool = Field(default=False)
    is_hr: bool = Field(default=False)
    is_vp: bool = Field(default=False)
    is_president: bool = Field(default=False)

    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

class UserRead(SQLModel):
    id: int
    email: str
    name: Optional[str]
    department_id: Optional[int]
    is_head: bool
    is_admin: bool
    is_comptroller: bool
    is_hr: bool
    is_vp: bool
    is_president: bool
