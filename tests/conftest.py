import asyncio
import json
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import NullPool
from sqlmodel.ext.asyncio.session import AsyncSession

from app.db.engine import init_db
from app.models.travel_request import TravelRequest
from app.models.user import User
from app.services.request_store import RequestStore


class MemoryStore(RequestStore):
    """RequestStore over plain objects; applies the same conditional-write rules."""

    def __init__(self, requests=None, users=None):
        self.requests = {row.id: row for row in (requests or [])}
        self.users = {user.id: user for user in (users or [])}
        self.writes = []

    async def get_request(self, session, request_id):
        return self.requests.get(request_id)

    async def get_user(self, session, user_id):
        return self.users.get(user_id)

    async def update_request(self, session, request_id, fields, expected_status=None, guard_column=None):
        row = self.requests.get(request_id)
        if row is None:
            return False
        if expected_status is not None and row.status != expected_status:
            return False
        if guard_column is not None and getattr(row, guard_column) is not None:
            return False
        for key, value in fields.items():
            setattr(row, key, value)
        self.writes.append((request_id, dict(fields)))
        return True


class RecordingNotifier:
    def __init__(self, fail: bool = False):
        self.calls = []
        self.fail = fail

    async def dispatch(self, **kwargs):
        self.calls.append(kwargs)
        if self.fail:
            raise RuntimeError("notification backend unavailable")
        return 1


def make_request(**overrides) -> TravelRequest:
    values = {
        "id": 1,
        "request_number": "TO-2026-0001",
        "request_type": "travel_order",
        "requester_id": 100,
        "requester_name": "Faculty Member",
        "requester_is_head": False,
        "department_id": 10,
        "parent_department_id": None,
        "has_budget": False,
        "total_budget": None,
        "comptroller_edited_budget": None,
        "expense_breakdown": "[]",
        "status": "pending_head",
        "workflow_metadata": "{}",
        "created_at": datetime(2026, 1, 5, 8, 0, 0),
    }
    values.update(overrides)
    if isinstance(values["expense_breakdown"], list):
        values["expense_breakdown"] = json.dumps(values["expense_breakdown"])
    return TravelRequest(**values)


def make_user(user_id: int, **flags) -> User:
    values = {
        "id": user_id,
        "email": f"user{user_id}@travilink.test",
        "name": f"User {user_id}",
        "department_id": 10,
        "is_active": True,
    }
    values.update(flags)
    return User(**values)


@pytest.fixture
def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'travilink.db'}", poolclass=NullPool)
    asyncio.run(init_db(engine))
    factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    try:
        yield factory
    finally:
        asyncio.run(engine.dispose())
