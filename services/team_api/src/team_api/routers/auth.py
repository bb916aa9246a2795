from fastapi import APIRouter, Depends, HTTPException, Request, Response, status
from pydantic import BaseModel, EmailStr, Field
from sqlalchemy.ext.asyncio import AsyncSession

from team_api.auth import session_cookie_kwargs
from team_api.db.session import get_session
from team_api.models import User
from team_api.rbac import get_current_user
from team_api.repositories import (
    InvalidCredentialsError,
    audit_request,
    authenticate,
    close_login_session,
    open_login_session,
    signup,
)
from team_api.settings import get_settings

settings = get_settings()

router = APIRouter()


class SignupIn(BaseModel):
    name: str | None = Field(default=None, max_length=255)
    email: EmailStr
    password: str


class LoginIn(BaseModel):
    email: EmailStr
    password: str


def _user_out(user: User) -> dict:
    return {"id": user.id, "name": user.name, "email": user.email}


@router.post("/auth/signup", status_code=status.HTTP_201_CREATED)
async def signup_endpoint(
    payload: SignupIn,
    request: Request,
    session: AsyncSession = Depends(get_session),
):
    user = await signup(session, payload.name, payload.email, payload.password)
    await audit_request(
        session,
        request,
        actor_user_id=user.id,
        team_id=None,
        action="user.signup",
        target_type="user",
        target_id=user.id,
    )
    return {"user": _user_out(user)}


@router.post("/auth/login")
async def login(
    payload: LoginIn,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    try:
        user = await authenticate(session, payload.email, payload.password)
    except InvalidCredentialsError:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid email or password"
        )

    raw_session = await open_login_session(session, settings, user.id)
    response.set_cookie(value=raw_session, **session_cookie_kwargs(settings))
    return {"status": "ok", "user": _user_out(user)}


@router.post("/auth/logout")
async def logout(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_session),
):
    raw_session = request.cookies.get(settings.session_cookie_name)
    if raw_session:
        await close_login_session(session, settings, raw_session)
    response.delete_cookie(settings.session_cookie_name, path="/")
    return {"status": "ok"}


@router.get("/me")
async def me(current_user: User = Depends(get_current_user)):
    return {"user": _user_out(current_user)}
