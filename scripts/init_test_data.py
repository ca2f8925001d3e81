#!/usr/bin/env python3
"""
Seed a local database with departments, one approver per role and a
pending travel request, then print bearer tokens for each approver.
"""
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from sqlmodel import select
from sqlmodel.ext.asyncio.session import AsyncSession
from app.core.rbac import create_access_token
from app.db.engine import engine, init_db
from app.models.department import Department
from app.models.travel_request import TravelRequest
from app.models.user import User


APPROVERS = [
    ("head@travilink.test", "Department Head", {"is_head": True}),
    ("parenthead@travilink.test", "College Dean", {"is_head": True}),
    ("admin@travilink.test", "Transport Admin", {"is_admin": True}),
    ("comptroller@travilink.test", "Comptroller", {"is_comptroller": True}),
    ("hr@travilink.test", "HR Officer", {"is_hr": True}),
    ("vp@travilink.test", "Vice President", {"is_vp": True}),
    ("president@travilink.test", "University President", {"is_president": True}),
]


async def _get_or_create_department(session: AsyncSession, code: str, name: str, parent_id=None) -> Department:
    department = (await session.exec(select(Department).where(Department.code == code))).first()
    if department:
        return department
    department = Department(code=code, name=name, parent_department_id=parent_id)
    session.add(department)
    await session.commit()
    await session.refresh(department)
    return department


async def _get_or_create_user(session: AsyncSession, email: str, name: str, department_id, flags: dict) -> User:
    user = (await session.exec(select(User).where(User.email == email))).first()
    if user:
        return user
    user = User(email=email, name=name, department_id=department_id, **flags)
    session.add(user)
    await session.commit()
    await session.refresh(user)
    return user


async def create_test_data():
    await init_db()

    async with AsyncSession(engine, expire_on_commit=False) as session:
        college = await _get_or_create_department(session, "CCMS", "College of Computing")
        office = await _get_or_create_department(session, "WCDEO", "Web and Content Office", college.id)

        users = {}
        for email, name, flags in APPROVERS:
            department_id = college.id if email.startswith("parenthead") else office.id
            users[email] = await _get_or_create_user(session, email, name, department_id, flags)

        requester = await _get_or_create_user(session, "faculty@travilink.test", "Faculty Member", office.id, {})

        request_row = TravelRequest(
            request_number="TO-2026-0001",
            request_type="travel_order",
            title="Regional conference",
            requester_id=requester.id,
            requester_name=requester.name,
            department_id=office.id,
            parent_department_id=college.id,
            has_budget=True,
            total_budget=18500.0,
            expense_breakdown=json.dumps([
                {"category": "transportation", "amount": 6500.0, "description": "Airfare"},
                {"category": "accommodation", "amount": 9000.0, "description": "3 nights"},
                {"category": "registration", "amount": 3000.0, "description": "Conference fee"},
            ]),
            status="pending_head",
        )
        session.add(request_row)
        await session.commit()
        await session.refresh(request_row)

        print(f"Created request {request_row.request_number} (id={request_row.id})")
        for email, user in users.items():
            print(f"{email}: Bearer {create_access_token(user.id)}")


if __name__ == "__main__":
    asyncio.run(create_test_data())
