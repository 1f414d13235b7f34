# backend/marketplace/api/auth.py

from fastapi import APIRouter, Body, Depends, Request
from fastapi.security import OAuth2PasswordBearer, OAuth2PasswordRequestForm
from jose import ExpiredSignatureError, JWTError, jwt
from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime, timedelta
from typing import Optional, Tuple
import logging
import secrets
import hashlib

from ..core.config import settings
from ..database import get_db
from ..models.user import User
from ..schemas.user import RefreshRequest, Token, UserResponse
from ..utils.auth import verify_password, normalize_email
from ..utils.errors import AuthExpired, AuthRequired

logger = logging.getLogger(__name__)

router = APIRouter(tags=["auth"])

# JWT Configuration
SECRET_KEY = settings.SECRET_KEY
ALGORITHM = settings.ALGORITHM
ACCESS_TOKEN_EXPIRE_MINUTES = settings.ACCESS_TOKEN_EXPIRE_MINUTES
REFRESH_TOKEN_EXPIRE_DAYS = settings.REFRESH_TOKEN_EXPIRE_DAYS

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/auth/login", auto_error=False)


def create_access_token(data: dict, expires_delta: Optional[timedelta] = None):
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.utcnow() + expires_delta
    else:
        expire = datetime.utcnow() + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def _hash_token(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def _create_refresh_token(email: str) -> Tuple[str, datetime]:
    """Create a signed refresh token and its expiry."""
    expires = datetime.utcnow() + timedelta(days=REFRESH_TOKEN_EXPIRE_DAYS)
    jti = secrets.token_urlsafe(16)
    token = jwt.encode({"sub": email, "typ": "refresh", "jti": jti, "exp": expires}, SECRET_KEY, algorithm=ALGORITHM)
    return token, expires


def _store_refresh_token(db: Session, user: User, token: str, exp: datetime) -> None:
    user.refresh_token_hash = _hash_token(token)
    user.refresh_token_expires_at = exp
    db.add(user)
    db.commit()
    db.refresh(user)


def get_user_by_email(db: Session, email: str) -> Optional[User]:
    email = normalize_email(email)
    return db.query(User).filter(func.lower(User.email) == email).first()


def issue_tokens(db: Session, user: User) -> Token:
    access_token = create_access_token(
        data={"sub": user.email},
        expires_delta=timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES),
    )
    refresh_token, r_exp = _create_refresh_token(user.email)
    _store_refresh_token(db, user, refresh_token, r_exp)
    return Token(access_token=access_token, refresh_token=refresh_token)


def decode_access_token(token: Optional[str]) -> str:
    """Return the subject email of a valid access token."""
    if not token:
        raise AuthRequired("Not authenticated.")
    try:
        payload = jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except ExpiredSignatureError:
        raise AuthExpired("Your session has expired. Please log in again.")
    except JWTError:
        raise AuthRequired("Could not validate credentials.")
    if payload.get("typ") == "refresh":
        raise AuthRequired("Could not validate credentials.")
    email = payload.get("sub")
    if email is None:
        raise AuthRequired("Could not validate credentials.")
    return email


@router.post("/login", response_model=Token)
def login(
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db),
):
    user = get_user_by_email(db, form_data.username)
    if not user or not verify_password(form_data.password, user.password):
        logger.info("Login failed for %s", normalize_email(form_data.username))
        raise AuthRequired("Incorrect email or password")
    if not user.is_active:
        raise AuthRequired("Inactive user")
    return issue_tokens(db, user)


@router.post("/refresh", response_model=Token)
def refresh_token(
    body: Optional[RefreshRequest] = Body(default=None),
    db: Session = Depends(get_db),
    request: Request = None,
):
    """Rotate the refresh token and issue a new access token.

    Accepts the refresh token in the JSON body or the ``refresh_token`` cookie.
    A token that has already been rotated is rejected.
    """
    refresh_jwt = (body.refresh_token if body else None) or (
        request.cookies.get("refresh_token") if request else None
    )
    if not refresh_jwt:
        raise AuthRequired("Missing refresh token")
    try:
        payload = jwt.decode(refresh_jwt, SECRET_KEY, algorithms=[ALGORITHM])
    except JWTError:
        raise AuthExpired("Session expired")
    if payload.get("typ") != "refresh":
        raise AuthRequired("Invalid token type")
    email = payload.get("sub")

    user = get_user_by_email(db, email or "")
    if not user or not user.refresh_token_hash:
        raise AuthExpired("Session expired")
    if user.refresh_token_expires_at and user.refresh_token_expires_at < datetime.utcnow():
        # Expired in DB
        user.refresh_token_hash = None
        db.commit()
        raise AuthExpired("Session expired")
    if _hash_token(refresh_jwt) != user.refresh_token_hash:
        raise AuthExpired("Token has been rotated")
    return issue_tokens(db, user)


def get_current_user(
    request: Request = None,
    token: Optional[str] = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> User:
    jwt_token = token or (request.cookies.get("access_token") if request else None)
    email = decode_access_token(jwt_token)
    user = get_user_by_email(db, email)
    if user is None or not user.is_active:
        raise AuthRequired("Could not validate credentials.")
    return user


@router.get("/me", response_model=UserResponse)
def read_current_user(current_user: User = Depends(get_current_user)):
    return current_user


@router.post("/logout")
def logout(
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    """Invalidate the current session's refresh token."""
    current_user.refresh_token_hash = None
    current_user.refresh_token_expires_at = None
    db.add(current_user)
    db.commit()
    return {"message": "Logged out"}
