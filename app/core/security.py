from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import JWTError, jwt
from sqlalchemy.orm import Session
from app.core.config import settings
from app.database import get_db
from app import crud, models, schemas
import logging
import uuid

logger = logging.getLogger("app.audit")

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/users/token")
optional_oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.API_V1_STR}/users/token", auto_error=False)


def decode_access_token(token: str) -> Optional[str]:
    """Username carried by a valid access token, None otherwise"""
    try:
        payload = jwt.decode(token, settings.SECRET_KEY, algorithms=[settings.ALGORITHM])
    except JWTError:
        return None
    if payload.get("token_type") != "access":
        return None
    return payload.get("sub")


async def get_current_user(db: Session = Depends(get_db), token: str = Depends(oauth2_scheme)) -> models.User:
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )

    username = decode_access_token(token)
    if username is None:
        raise credentials_exception
    token_data = schemas.TokenData(username=username, token_type="access")

    user = crud.get_user_by_username(db, username=token_data.username)
    if user is None:
        raise credentials_exception
    return user


async def get_current_active_user(current_user: models.User = Depends(get_current_user)) -> models.User:
    if not current_user.is_active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user")
    return current_user


def get_current_active_admin(
    current_user: models.User = Depends(get_current_active_user),
) -> models.User:
    if not current_user.is_admin:
        raise HTTPException(status_code=403, detail="The user doesn't have enough privileges")
    return current_user


def get_optional_current_user(db: Session = Depends(get_db), token: Optional[str] = Depends(optional_oauth2_scheme)) -> Optional[models.User]:
    if not token:
        return None
    username = decode_access_token(token)
    if username is None:
        return None  #invalid token, treat as anonymous

    user = crud.get_user_by_username(db, username=username)
    if user and user.is_active:
        return user
    return None


def resolve_role(token: Optional[str], db: Session) -> Optional[str]:
    """Role of the active user owning ``token``; None for anonymous or invalid tokens"""
    if not token:
        return None
    username = decode_access_token(token)
    if username is None:
        return None
    user = crud.get_user_by_username(db, username=username)
    if user is None or not user.is_active:
        return None
    return user.role


def create_access_token(data: dict) -> Tuple[str, str, datetime]:
    """create access token"""
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES)
    jti = str(uuid.uuid4())
    to_encode.update({"exp": expire, "token_type": "access", "jti": jti})
    token = jwt.encode(to_encode, settings.SECRET_KEY, algorithm=settings.ALGORITHM)
    return token, jti, expire


def create_refresh_token(data: dict, expires_delta: Optional[timedelta] = None) -> Tuple[str, str, datetime]:
    """create refresh token"""
    to_encode = data.copy()
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.REFRESH_TOKEN_EXPIRE_MINUTES)
    jti = str(uuid.uuid4())
    to_encode.update({"exp": expire, "token_type": "refresh", "jti": jti})
    encoded_jwt = jwt.encode(to_encode, settings.REFRESH_TOKEN_SECRET_KEY, algorithm=settings.REFRESH_TOKEN_ALGORITHM)
    return encoded_jwt, jti, expire


def audit_log(message: str):
    logger.info(f"[AUDIT] {datetime.now(timezone.utc).isoformat()} - {message}")
