from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.security import OAuth2PasswordRequestForm

from circulation.api.v1.dependencies import CurrentUser, DbSession, oauth2_scheme
from circulation.schemas.auth import RegisterRequest, TokenResponse, LogoutResponse
from circulation.services.auth import register_user, authenticate_user, create_user_token, blacklist_token

router = APIRouter(prefix="/auth", tags=["Authentication"])


@router.post(
    "/register",
    response_model=TokenResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Register a patron",
    description="Create a new member account and receive a JWT access token.",
    responses={
        201: {"description": "Patron registered, JWT token returned"},
        409: {"description": "Email already registered"},
        422: {"description": "Validation error"},
    },
)
async def register(data: RegisterRequest, db: DbSession):
    try:
        user = await register_user(db, data.email, data.password, data.full_name)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    return TokenResponse(access_token=create_user_token(user))


@router.post(
    "/login",
    response_model=TokenResponse,
    summary="Login",
    description="OAuth2 password form; the `username` field carries the email address.",
    responses={
        200: {"description": "Login successful, JWT token returned"},
        401: {"description": "Invalid email or password"},
    },
)
async def login(
    form_data: Annotated[OAuth2PasswordRequestForm, Depends()],
    db: DbSession,
):
    user = await authenticate_user(db, form_data.username, form_data.password)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return TokenResponse(access_token=create_user_token(user))


@router.post(
    "/logout",
    response_model=LogoutResponse,
    summary="Logout",
    description="Revoke the current JWT token.",
    responses={
        200: {"description": "Successfully logged out"},
        401: {"description": "Not authenticated or token already revoked"},
    },
)
async def logout(
    token: Annotated[str, Depends(oauth2_scheme)],
    current_user: CurrentUser,
    db: DbSession,
):
    await blacklist_token(db, token)
    return LogoutResponse()
