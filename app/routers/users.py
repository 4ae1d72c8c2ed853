from fastapi import APIRouter, Depends, HTTPException, status, Request
from sqlalchemy.orm import Session
from fastapi.security import OAuth2PasswordRequestForm
from slowapi import Limiter
from slowapi.util import get_remote_address
from jose import jwt, JWTError

from app.core.config import settings
from .. import crud, models, schemas
from ..core.security import create_access_token, create_refresh_token, get_current_active_user
from ..database import get_db

limiter = Limiter(key_func=get_remote_address)

router = APIRouter(
    prefix="/users",
    tags=["users"]
)

@router.post("/", response_model=schemas.User)
@limiter.limit("5/minute")
def create_user(
    request: Request,
    user: schemas.UserCreate,
    db: Session = Depends(get_db)
):
    db_user = crud.get_user_by_email(db, email=user.email)
    if db_user:
        raise HTTPException(status_code=400, detail="Email already registered")

    existing_username = crud.get_user_by_username(db, username=user.username)
    if existing_username:
        raise HTTPException(status_code=400, detail="Username already taken")

    return crud.create_user(db=db, user=user)

@router.get("/me", response_model=schemas.User)
async def read_user_me(
    current_user: models.User = Depends(get_current_active_user)
):
    return current_user

@router.post("/token", response_model=schemas.Token)
@limiter.limit("10/minute")
def login_for_access_token(
    request: Request,
    form_data: OAuth2PasswordRequestForm = Depends(),
    db: Session = Depends(get_db)
):
    user = crud.authenticate_user(db, identifier=form_data.username, password=form_data.password)

    if not user:
        crud.create_audit_log(
            db=db,
            action="login.failed",
            details=f"Failed login attempt for: {form_data.username}",
            success=False
        )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Incorrect username or password",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not user.is_active:
        crud.create_audit_log(
            db=db,
            action="login.failed.inactive",
            user_id=user.id,
            details=f"Login attempt for deactivated account: {user.username}",
            success=False
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="This account has been deactivated. Please contact support to reactivate your account.",
        )

    access_token, access_jti, access_expires = create_access_token(data={"sub": user.username})
    refresh_token, refresh_jti, refresh_expires = create_refresh_token(data={"sub": user.username})

    crud.create_audit_log(
        db=db,
        action="login.success",
        user_id=user.id,
        details=f"User logged in: {user.username}",
        success=True
    )

    return {"access_token": access_token, "token_type": "bearer", "refresh_token": refresh_token}

@router.post("/token/refresh", response_model=schemas.Token)
@limiter.limit("30/minute")
def refresh_token(request: Request, token_request_body: schemas.RefreshTokenRequest, db: Session = Depends(get_db)):
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(token_request_body.refresh_token, settings.REFRESH_TOKEN_SECRET_KEY, algorithms=[settings.REFRESH_TOKEN_ALGORITHM])

        username: str = payload.get("sub")
        if username is None:
            raise credentials_exception

        token_type = payload.get("token_type")
        if token_type != "refresh":
            raise credentials_exception

    except JWTError:
        raise credentials_exception

    user = crud.get_user_by_username(db, username=username)
    if user is None or not user.is_active:
        raise credentials_exception

    new_access_token, access_jti, access_expires = create_access_token(data={"sub": user.username})
    new_refresh_token, refresh_jti, refresh_expires = create_refresh_token(data={"sub": user.username})

    crud.create_audit_log(
        db=db,
        action="token.refresh",
        user_id=user.id,
        details=f"Token refreshed for user: {user.username}",
        success=True
    )

    return {"access_token": new_access_token, "token_type": "bearer", "refresh_token": new_refresh_token}
