from fastapi import APIRouter, Depends, HTTPException, Request
from sqlmodel.ext.asyncio.session import AsyncSession

from app.core.rbac import decode_user_id, get_bearer_token, user_roles
from app.db.engine import get_session
from app.models.user import User, UserRead

router = APIRouter()

async def get_current_user(request: Request, session: AsyncSession = Depends(get_session)):
    user_id = decode_user_id(get_bearer_token(request))
    if user_id is None:
        return None
    return await session.get(User, user_id)

@router.get("/me")
async def read_me(user: User = Depends(get_current_user)):
    if not user:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return {
        "user": UserRead.model_validate(user, from_attributes=True),
        "roles": sorted(role.value for role in user_roles(user)),
    }
