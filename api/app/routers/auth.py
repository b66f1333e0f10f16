"""
Authentication Router

Handles user registration, login and the current-account view.
"""

import re
from datetime import datetime, timedelta, timezone
from typing import Optional

from fastapi import APIRouter, Depends, Request, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from passlib.context import CryptContext
from pydantic import BaseModel, EmailStr, field_validator
from sqlalchemy.orm import Session

from app.config import settings
from app.database import get_db
from app.exceptions import ConflictError, UnauthorizedError
from app.models import User
from app.services import metrics
from app.services.entitlements import EntitlementService
from app.services.rate_limiter import AUTH_RATE_LIMIT, REGISTER_RATE_LIMIT, limiter

router = APIRouter()

# Password hashing
pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# OAuth2 scheme
oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/login", auto_error=False)


# Password validation constants
MIN_PASSWORD_LENGTH = 8
PASSWORD_PATTERN = re.compile(
    r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d).+$'
)


# Pydantic schemas
class UserCreate(BaseModel):
    email: EmailStr
    password: str
    full_name: Optional[str] = None

    @field_validator('password')
    @classmethod
    def validate_password_strength(cls, v: str) -> str:
        """
        Validate password meets security requirements:
        - At least 8 characters
        - Contains at least one uppercase letter
        - Contains at least one lowercase letter
        - Contains at least one digit
        """
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(
                f'Password must be at least {MIN_PASSWORD_LENGTH} characters long'
            )
        if not PASSWORD_PATTERN.match(v):
            raise ValueError(
                'Password must contain at least one uppercase letter, '
                'one lowercase letter, and one digit'
            )
        return v


class UserResponse(BaseModel):
    id: str
    email: str
    full_name: Optional[str] = None
    access_level: str
    free_scan_used: bool
    scan_credits: int
    paid_scan_completed: bool
    monitoring_active: bool
    created_at: datetime


class AuthResponse(BaseModel):
    user: UserResponse
    token: str
    token_type: str = "bearer"


class LoginRequest(BaseModel):
    email: EmailStr
    password: str


# Helper functions
def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def get_password_hash(password: str) -> str:
    return pwd_context.hash(password)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None) -> str:
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + (expires_delta or timedelta(minutes=settings.jwt_access_token_expire_minutes))
    to_encode.update({"exp": expire, "type": "access"})
    return jwt.encode(to_encode, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def user_to_response(user: User) -> UserResponse:
    return UserResponse(
        id=str(user.id),
        email=user.email,
        full_name=user.full_name,
        access_level=EntitlementService.access_level(user).value,
        free_scan_used=user.free_scan_used,
        scan_credits=user.scan_credits or 0,
        paid_scan_completed=user.paid_scan_completed,
        monitoring_active=user.monitoring_active,
        created_at=user.created_at,
    )


async def get_current_user(
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db)
) -> User:
    if not token:
        raise UnauthorizedError("Not authenticated")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
        email: str = payload.get("sub")
        if email is None or payload.get("type") != "access":
            raise UnauthorizedError("Could not validate credentials")
    except JWTError:
        raise UnauthorizedError("Could not validate credentials")

    user = db.query(User).filter(User.email == email).first()
    if user is None or not user.is_active:
        raise UnauthorizedError("Could not validate credentials")
    return user


# Routes
@router.post("/register", response_model=AuthResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(REGISTER_RATE_LIMIT)
async def register(request: Request, user_data: UserCreate, db: Session = Depends(get_db)):
    """Register a new account. New accounts start on the free plan."""
    email = user_data.email.lower()
    existing_user = db.query(User).filter(User.email == email).first()
    if existing_user:
        raise ConflictError("Email already registered")

    user = User(
        email=email,
        password_hash=get_password_hash(user_data.password),
        full_name=user_data.full_name,
    )
    db.add(user)
    db.commit()
    db.refresh(user)

    access_token = create_access_token(data={"sub": user.email, "user_id": str(user.id)})
    return AuthResponse(user=user_to_response(user), token=access_token)


@router.post("/login", response_model=AuthResponse)
@limiter.limit(AUTH_RATE_LIMIT)
async def login(request: Request, login_data: LoginRequest, db: Session = Depends(get_db)):
    """Login and get access token."""
    user = db.query(User).filter(User.email == login_data.email.lower()).first()
    if not user or not verify_password(login_data.password, user.password_hash):
        metrics.record_auth_attempt("password", False)
        raise UnauthorizedError("Incorrect email or password")

    if not user.is_active:
        metrics.record_auth_attempt("password", False)
        raise UnauthorizedError("Account is deactivated")

    metrics.record_auth_attempt("password", True)
    access_token = create_access_token(data={"sub": user.email, "user_id": str(user.id)})
    return AuthResponse(user=user_to_response(user), token=access_token)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Current account and its entitlement state."""
    return user_to_response(current_user)
