"""Admin panel sign-in and account management."""

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from datetime import datetime, timedelta
from typing import List, Optional
from uuid import UUID
import logging

from app.database import get_db
from app.models import User
from app.auth import verify_password, create_access_token, hash_password, get_current_user, get_current_admin_user
from app.schemas import LoginRequest, TokenResponse, UserCreate, UserUpdate, PasswordChange, UserResponse
from app.config import settings

logger = logging.getLogger(__name__)
router = APIRouter()


async def find_user_by_email(db: AsyncSession, email: str) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email.lower()))
    return result.scalar_one_or_none()


async def commit_user(db: AsyncSession, user: User, action: str):
    try:
        await db.commit()
        await db.refresh(user)
    except Exception as e:
        await db.rollback()
        logger.error(f"❌ Failed to {action} user {user.email}: {e}")
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Failed to {action} user"
        )


@router.post("/login", response_model=TokenResponse)
async def login(
    credentials: LoginRequest,
    db: AsyncSession = Depends(get_db)
):
    """
    Exchange email and password for a bearer token.

    The token also authorizes the progress stream through its ``token``
    query parameter, since EventSource cannot send headers.
    """
    user = await find_user_by_email(db, credentials.email)

    if not user or not verify_password(credentials.password, user.password_hash):
        logger.warning(f"Login failed for: {credentials.email}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect email or password"
        )

    if not user.is_active:
        logger.warning(f"Inactive account login attempt: {credentials.email}")
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is not active"
        )

    expires = timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    access_token = create_access_token(data={"sub": user.email, "role": user.role}, expires_delta=expires)

    user.last_login = datetime.utcnow()
    await db.commit()

    logger.info(f"✅ {user.role} signed in: {user.email}")
    return TokenResponse(access_token=access_token, expires_in=int(expires.total_seconds()))


@router.get("/me", response_model=UserResponse)
async def get_current_user_info(current_user: User = Depends(get_current_user)):
    return UserResponse.model_validate(current_user)


@router.post("/me/password", status_code=status.HTTP_204_NO_CONTENT)
async def change_own_password(
    payload: PasswordChange,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db)
):
    """Change the signed-in user's password; the current one must be supplied."""
    if not verify_password(payload.current_password, current_user.password_hash):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Current password is incorrect"
        )

    current_user.password_hash = hash_password(payload.new_password)
    await commit_user(db, current_user, "update")
    logger.info(f"Password changed for {current_user.email}")


# ============================================
# ACCOUNT MANAGEMENT (ADMIN)
# ============================================

@router.get("/users", response_model=List[UserResponse])
async def list_users(
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db)
):
    result = await db.execute(select(User).order_by(User.created_at))
    return [UserResponse.model_validate(u) for u in result.scalars().all()]


@router.post("/users", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    user_data: UserCreate,
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db)
):
    """Create an editor, viewer or admin account."""
    if await find_user_by_email(db, user_data.email):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email already registered"
        )

    user = User(
        email=user_data.email.lower(),
        password_hash=hash_password(user_data.password),
        full_name=user_data.full_name,
        role=user_data.role,
        is_active=True
    )
    db.add(user)
    await commit_user(db, user, "create")

    logger.info(f"✅ User created: {user.email} ({user.role}) by {current_user.email}")
    return UserResponse.model_validate(user)


@router.patch("/users/{user_id}", response_model=UserResponse)
async def update_user(
    user_id: UUID,
    changes: UserUpdate,
    current_user: User = Depends(get_current_admin_user),
    db: AsyncSession = Depends(get_db)
):
    """
    Change an account's name, role or active flag, or reset its password.

    Admins cannot deactivate or demote themselves, so the panel always
    keeps at least the acting admin.
    """
    user = await db.get(User, user_id)
    if not user:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    if user.id == current_user.id and (changes.is_active is False or (changes.role and changes.role != "admin")):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="You cannot deactivate or demote your own account"
        )

    fields = changes.model_dump(exclude_unset=True)
    password = fields.pop("password", None)
    for field, value in fields.items():
        setattr(user, field, value)
    if password:
        user.password_hash = hash_password(password)

    await commit_user(db, user, "update")

    logger.info(f"User {user.email} updated by {current_user.email}: {sorted(changes.model_fields_set)}")
    return UserResponse.model_validate(user)
