"""User administration endpoints (super admin only)."""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import api_rate_limit, get_async_session, require_roles
from core.request_context import AuthContext
from models.user import UserRole
from schemas.user import UserCreate, UserResponse
from services import user_service
from services.exceptions import UsernameTakenError, UserNotFoundError

router = APIRouter(
    prefix="/users",
    tags=["users"],
    dependencies=[Depends(api_rate_limit)],
)

require_super_admin = require_roles(UserRole.SUPER_ADMIN)


@router.post("/", response_model=UserResponse, status_code=201)
async def create_user(
    data: UserCreate,
    identity: AuthContext = Depends(require_super_admin),
    db: AsyncSession = Depends(get_async_session),
) -> UserResponse:
    """Create a user account."""
    try:
        user = await user_service.create_user(db, data, created_by=identity.user.id)
    except UsernameTakenError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e)) from None
    return UserResponse.model_validate(user)


@router.get("/", response_model=list[UserResponse])
async def list_users(
    _identity: AuthContext = Depends(require_super_admin),
    db: AsyncSession = Depends(get_async_session),
) -> list[UserResponse]:
    """List all users."""
    users = await user_service.get_users(db)
    return [UserResponse.model_validate(u) for u in users]


@router.post("/{user_id}/deactivate", response_model=UserResponse)
async def deactivate_user(
    user_id: int,
    identity: AuthContext = Depends(require_super_admin),
    db: AsyncSession = Depends(get_async_session),
) -> UserResponse:
    """
    Deactivate a user.

    Their API tokens are kept but stop authenticating until reactivation.
    """
    if user_id == identity.user.id:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot deactivate your own account",
        )
    try:
        user = await user_service.set_user_active(
            db, user_id, active=False, changed_by=identity.user.id,
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None
    return UserResponse.model_validate(user)


@router.post("/{user_id}/activate", response_model=UserResponse)
async def activate_user(
    user_id: int,
    identity: AuthContext = Depends(require_super_admin),
    db: AsyncSession = Depends(get_async_session),
) -> UserResponse:
    """Reactivate a user and clear any login lockout."""
    try:
        user = await user_service.set_user_active(
            db, user_id, active=True, changed_by=identity.user.id,
        )
    except UserNotFoundError:
        raise HTTPException(status_code=404, detail="User not found") from None
    return UserResponse.model_validate(user)
