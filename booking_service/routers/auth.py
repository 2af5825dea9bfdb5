import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from ..config import settings
from ..database import get_db
from ..errors import ValidationError
from ..models.user import User
from ..schemas.user import LoginRequest, RegisterRequest, TokenResponse, UserResponse
from ..services.user_service import UserStore
from ..utils.dependencies import get_current_user
from ..utils.logging_config import get_logger
from ..utils.rate_limiter import get_rate_limit, limiter
from ..utils.security import create_access_token

logger = get_logger(__name__)

router = APIRouter(prefix="/api/users", tags=["Users"])


def _token_response(user: User) -> TokenResponse:
    token = create_access_token({"sub": user.id, "email": user.email})
    return TokenResponse(access_token=token, user=UserResponse.model_validate(user))


@router.post("/register", response_model=TokenResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(get_rate_limit("register"))
def register(request: Request, data: RegisterRequest, db: Session = Depends(get_db)):
    """Create an account and return an access token"""
    if len(data.password) < settings.min_password_length:
        raise ValidationError(
            f"Password must be at least {settings.min_password_length} characters",
            "weak_password"
        )
    user = UserStore(db).create(data)
    return _token_response(user)


@router.post("/login", response_model=TokenResponse)
@limiter.limit(get_rate_limit("login"))
def login(request: Request, data: LoginRequest, db: Session = Depends(get_db)):
    user = UserStore(db).authenticate(data.email, data.password)
    if user is None or not user.is_active:
        logger.log_with_context(logging.WARNING, "Failed login attempt", entity_type="user", email=data.email)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return _token_response(user)


@router.get("/me", response_model=UserResponse)
def me(current_user: User = Depends(get_current_user)):
    return current_user
