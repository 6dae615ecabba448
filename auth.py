"""
Authentication routes and dependencies
"""

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Header, Depends, Cookie
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from database_models import User
from crud.user import UserRepository
from auth_utils import AUTH_COOKIE_NAME, hash_password, verify_password, create_jwt, decode_jwt
from config import settings, IS_PRODUCTION
from services.access_service import evaluate_access
from utils.security_utils import validate_email, validate_password_strength

logger = logging.getLogger(__name__)

# Create auth router
auth_router = APIRouter(prefix="/api/auth", tags=["auth"])

COOKIE_MAX_AGE = settings.jwt_expiry_days * 24 * 60 * 60


# Request models
class SignupRequest(BaseModel):
    email: str
    password: str
    name: str
    business_type: Optional[str] = None


class LoginRequest(BaseModel):
    email: str
    password: str


def _session_response(user: User) -> JSONResponse:
    """JSON body plus the httpOnly auth cookie shared by signup and login."""
    token = create_jwt(str(user.id))
    response = JSONResponse(
        content={
            "ok": True,
            "user_id": str(user.id),
            "token": token,
        }
    )
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value=token,
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="Lax",
        max_age=COOKIE_MAX_AGE,
    )
    return response


@auth_router.post("/signup")
async def signup(request: SignupRequest, db: AsyncSession = Depends(get_db)):
    """Create a new account. New users start inactive until checkout or a promo code."""
    if not validate_email(request.email):
        raise HTTPException(status_code=400, detail="Please enter a valid email address")

    if not request.name.strip():
        raise HTTPException(status_code=400, detail="Name is required")

    try:
        validate_password_strength(request.password)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))

    user_repo = UserRepository(db)

    existing_user = await user_repo.get_user_by_email(request.email)
    if existing_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    user = await user_repo.create_user({
        "email": request.email,
        "hashed_password": hash_password(request.password),
        "name": request.name.strip(),
        "business_type": request.business_type,
        "is_active": True,
    })
    await db.commit()
    logger.info(f"New user registered: {user.email} (id={user.id})")

    return _session_response(user)


@auth_router.post("/login")
async def login(request: LoginRequest, db: AsyncSession = Depends(get_db)):
    """Login and get JWT token"""
    user_repo = UserRepository(db)

    user = await user_repo.get_user_by_email(request.email)
    if not user or not verify_password(request.password, user.hashed_password):
        raise HTTPException(status_code=401, detail="Invalid email or password")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return _session_response(user)


@auth_router.post("/logout")
async def logout():
    """Logout and clear auth token cookie"""
    response = JSONResponse(
        content={
            "ok": True,
            "message": "Logged out successfully"
        }
    )
    # Clear the auth_token cookie by setting max_age=0
    response.set_cookie(
        key=AUTH_COOKIE_NAME,
        value="",
        httponly=True,
        secure=IS_PRODUCTION,
        samesite="Lax",
        max_age=0
    )
    return response


# Dependency for protected routes
async def get_current_user(
    auth_token: Optional[str] = Cookie(None),
    authorization: Optional[str] = Header(None, alias="Authorization"),
    db: AsyncSession = Depends(get_db)
) -> User:
    """
    Dependency function to get current authenticated user.

    Authentication priority:
    1. Check auth_token cookie first (httpOnly cookie set by login/signup)
    2. Fallback to Authorization header (Bearer token) for API consumers
    3. Raise 401 if neither is found

    The user row is always read fresh; entitlement decisions must not run on
    a cached copy of the subscription fields.
    """
    token = None
    if auth_token:
        token = auth_token
    elif authorization and authorization.startswith("Bearer "):
        token = authorization.replace("Bearer ", "").strip()

    if not token:
        raise HTTPException(status_code=401, detail="Missing authentication token")

    payload = decode_jwt(token)
    if not payload:
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    user_id_str = payload.get("sub")
    if not user_id_str:
        raise HTTPException(status_code=401, detail="Invalid token payload")

    # Convert user_id to integer (JWT stores it as string)
    try:
        user_id = int(user_id_str)
    except (ValueError, TypeError):
        raise HTTPException(status_code=401, detail="Invalid user ID in token")

    user = await UserRepository(db).get_user_by_id(user_id)
    if not user:
        raise HTTPException(status_code=401, detail="User not found")

    if not user.is_active:
        raise HTTPException(status_code=401, detail="User account is inactive")

    return user


@auth_router.get("/me")
async def get_current_user_info(user: User = Depends(get_current_user)):
    """Get current user information and entitlement from JWT token"""
    decision = evaluate_access(user)
    return {
        "ok": True,
        "user_id": str(user.id),
        "email": user.email,
        "name": user.name,
        "business_type": user.business_type,
        "subscription_status": user.subscription_status,
        "has_access": decision.has_access,
        "is_trial": decision.is_trial,
        "days_left": decision.days_left,
    }
