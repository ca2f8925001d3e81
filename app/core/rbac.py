from typing import Optional

from fastapi import HTTPException, Request
from jose import JWTError, jwt

from app.core.config import settings
from app.models.user import User
from app.workflow.policy import ApproverRole


ROLE_FLAG_NAMES: dict[ApproverRole, str] = {
    ApproverRole.HEAD: "is_head",
    ApproverRole.ADMIN: "is_admin",
    ApproverRole.COMPTROLLER: "is_comptroller",
    ApproverRole.HR: "is_hr",
    ApproverRole.VP: "is_vp",
    ApproverRole.PRESIDENT: "is_president",
}


def get_bearer_token(request: Request) -> Optional[str]:
    header = request.headers.get("authorization")
    if header:
        scheme, _, param = header.partition(" ")
        if scheme.lower() == "bearer" and param:
            return param

    cookie = request.cookies.get("access_token")
    if not cookie:
        return None
    scheme, _, param = cookie.partition(" ")
    return param or scheme


def decode_user_id(token: Optional[str]) -> Optional[int]:
    if not token:
        return None
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=["HS256"])
    except JWTError:
        return None
    subject = payload.get("sub")
    try:
        return int(subject)
    except (TypeError, ValueError):
        return None


def create_access_token(user_id: int) -> str:
    return jwt.encode({"sub": str(user_id)}, settings.SECRET_KEY, algorithm="HS256")


def parse_role(role_raw: Optional[str]) -> ApproverRole:
    if not role_raw:
        raise HTTPException(status_code=400, detail="role is required")
    try:
        return ApproverRole(role_raw.strip().lower())
    except ValueError:
        raise HTTPException(status_code=400, detail=f"Unsupported role: {role_raw}")


def user_roles(user: User) -> set[ApproverRole]:
    return {role for role, flag in ROLE_FLAG_NAMES.items() if getattr(user, flag, False)}


def require_role(user: Optional[User], role_raw: Optional[str]) -> ApproverRole:
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    if not user.is_active:
        raise HTTPException(status_code=403, detail="Account is inactive")

    role = parse_role(role_raw)
    if role not in user_roles(user):
        raise HTTPException(status_code=403, detail=f"You are not registered as {role.value}")
    return role
