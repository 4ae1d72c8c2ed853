from pydantic import BaseModel, EmailStr, field_validator, Field, ConfigDict
from typing import Optional
from datetime import datetime
import re

from app.core.maintenance_policy import parse_timestamp

# ============= USER SCHEMAS =============

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(..., min_length=8, max_length=72, description="Password must be at least 8 characters with uppercase, lowercase, number, and special character")
    display_name: Optional[str] = Field(None, max_length=50)

    @field_validator('password')
    @classmethod
    def validate_password_strength(cls, v):
        if len(v) < 8:
            raise ValueError('Password must be at least 8 characters long')
        if not any(c.isupper() for c in v):
            raise ValueError('Password must contain at least one uppercase letter')
        if not any(c.islower() for c in v):
            raise ValueError('Password must contain at least one lowercase letter')
        if not any(c.isdigit() for c in v):
            raise ValueError('Password must contain at least one number')
        if not re.search(r'[!@#$%^&*(),.?":{}|<>_\-+=\[\]\\\/;~`]', v):
            raise ValueError('Password must contain at least one special character')
        return v

    @field_validator('display_name')
    @classmethod
    def validate_display_name(cls, v):
        if v is not None:
            v = v.strip()
            if len(v) == 0:
                raise ValueError('Display name cannot be empty')
        return v

    @field_validator('username')
    @classmethod
    def validate_username(cls, v):
        v = v.strip()
        if len(v) < 3:
            raise ValueError('Username must be at least 3 characters')
        if not re.match(r'^[a-zA-Z0-9_-]+$', v):
            raise ValueError('Username can only contain letters, numbers, hyphens, and underscores')
        return v

class UserBase(BaseModel):
    username: str
    email: EmailStr
    display_name: Optional[str] = None

class User(UserBase):
    id: int
    is_active: bool
    role: str
    created_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)

# ============= TOKEN SCHEMAS =============

class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str

class TokenData(BaseModel):
    username: Optional[str] = None
    token_type: Optional[str] = None

class RefreshTokenRequest(BaseModel):
    refresh_token: str

# ============= MAINTENANCE SCHEMAS =============

def _strict_timestamp(v):
    #writes reject garbage instead of silently dropping the boundary
    if v is None or isinstance(v, datetime):
        return parse_timestamp(v)
    parsed = parse_timestamp(v)
    if parsed is None:
        raise ValueError('Invalid timestamp, expected ISO 8601')
    return parsed

class MaintenanceSettingsCreate(BaseModel):
    enabled: bool = False
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    title: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=2000)
    countdown_label: Optional[str] = Field(None, max_length=200)

    @field_validator('window_start', 'window_end', mode='before')
    @classmethod
    def normalize_boundary(cls, v):
        return _strict_timestamp(v)

class MaintenanceSettingsUpdate(BaseModel):
    enabled: Optional[bool] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    title: Optional[str] = Field(None, max_length=200)
    message: Optional[str] = Field(None, max_length=2000)
    countdown_label: Optional[str] = Field(None, max_length=200)
    version: Optional[int] = Field(None, ge=1, description="Current version, rejected with 409 when outdated")

    @field_validator('window_start', 'window_end', mode='before')
    @classmethod
    def normalize_boundary(cls, v):
        return _strict_timestamp(v)

    @field_validator('enabled', 'title', 'message', 'countdown_label')
    @classmethod
    def not_null(cls, v):
        if v is None:
            raise ValueError('Field cannot be null')
        return v

class MaintenanceSettings(BaseModel):
    id: int
    enabled: bool
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    title: str
    message: str
    countdown_label: str
    version: int
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_orm_settings(cls, db_settings) -> "MaintenanceSettings":
        return cls(
            id=db_settings.id,
            enabled=db_settings.is_enabled,
            window_start=parse_timestamp(db_settings.maintenance_start),
            window_end=parse_timestamp(db_settings.maintenance_end),
            title=db_settings.title,
            message=db_settings.message,
            countdown_label=db_settings.countdown_message,
            version=db_settings.version,
            created_at=db_settings.created_at,
            updated_at=db_settings.updated_at,
        )

class Countdown(BaseModel):
    days: int
    hours: int
    minutes: int
    seconds: int

class MaintenanceStatus(BaseModel):
    enabled: bool
    active: bool
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    title: str
    message: str
    countdown_label: str
    countdown_active: bool
    countdown: Countdown

class GateCheck(BaseModel):
    path: str
    active: bool
    blocked: bool
    bypass: bool
    verdict: str
    role: Optional[str] = None
    test_override: bool = False
