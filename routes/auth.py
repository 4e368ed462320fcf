from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from typing import Optional
import logging

from database import get_db
from schemas import UserSignup, UserLogin, PasswordUpdate, InvitationAccept, MeResponse, Message
from auth import (
    accept_invitation,
    change_password,
    clear_session_cookie,
    create_session_token,
    get_current_user,
    get_settings,
    login as login_user,
    register,
    set_session_cookie,
)
from models import Profile, User
from rate_limit import rate_limit

router = APIRouter(prefix="/api/auth", tags=["Authentication"])
logger = logging.getLogger(__name__)


def _session_body(message: str, user: User, token: str, username: Optional[str] = None) -> dict:
    return {
        "message": message,
        "user": {
            "id": user.id,
            "email": user.email,
            "role": user.role,
            "username": username,
        },
        "access_token": token,
        "token_type": "bearer",
    }


# ============================================
# SIGNUP
# ============================================
@router.post("/signup", status_code=status.HTTP_201_CREATED, dependencies=[Depends(rate_limit)])
async def signup(
    data: UserSignup,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Create an account with a default profile and start a session.
    """
    settings = get_settings(request)
    user, profile = await register(db, data.email, data.password, data.full_name)
    token = create_session_token(user, settings)

    response = JSONResponse(
        status_code=status.HTTP_201_CREATED,
        content=_session_body("User created successfully", user, token, profile.username),
    )
    set_session_cookie(response, token, settings)
    return response


# ============================================
# LOGIN
# ============================================
@router.post("/login", dependencies=[Depends(rate_limit)])
async def login(
    user_login: UserLogin,
    request: Request,
    db: AsyncSession = Depends(get_db),
):
    """
    Login with email and password.
    Sets the session cookie and also returns the token for bearer clients.
    """
    settings = get_settings(request)
    user, token = await login_user(db, user_login.email, user_login.password, settings)

    result = await db.execute(
        select(Profile.username).where(Profile.user_id == user.id).order_by(Profile.id).limit(1)
    )
    username = result.scalar_one_or_none()

    logger.info(f"User {user.id} logged in")
    response = JSONResponse(content=_session_body("Login successful", user, token, username))
    set_session_cookie(response, token, settings)
    return response


# ============================================
# LOGOUT
# ============================================
@router.post("/logout", response_model=Message)
async def logout(request: Request):
    """
    Clear the session cookie. Tokens are stateless, so a copied bearer token
    stays valid until it expires.
    """
    response = JSONResponse(content={"message": "Successfully logged out"})
    clear_session_cookie(response, get_settings(request))
    return response


@router.get("/logout")
async def logout_redirect(request: Request):
    response = RedirectResponse(url="/", status_code=status.HTTP_302_FOUND)
    clear_session_cookie(response, get_settings(request))
    return response


# ============================================
# GET CURRENT USER INFO
# ============================================
@router.get("/me", response_model=MeResponse)
async def get_me(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Get current authenticated user's information.
    """
    result = await db.execute(
        select(Profile).where(Profile.user_id == current_user.id).order_by(Profile.id).limit(1)
    )
    profile = result.scalar_one_or_none()

    me = MeResponse.model_validate(current_user)
    if profile:
        me.full_name = profile.full_name
        me.username = profile.username
    return me


# ============================================
# PASSWORD
# ============================================
@router.post("/update-password", response_model=Message)
async def update_password(
    data: PasswordUpdate,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await change_password(db, current_user, data.current_password, data.new_password)
    return {"message": "Password updated successfully"}


# ============================================
# INVITATIONS
# ============================================
@router.post("/invite/accept", response_model=Message, dependencies=[Depends(rate_limit)])
async def invite_accept(
    data: InvitationAccept,
    db: AsyncSession = Depends(get_db),
):
    await accept_invitation(db, data.token, data.password)
    return {"message": "Account activated successfully"}
