from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from typing import Optional
from . import models, schemas
from .core.hashing import Hasher


class StaleVersionError(Exception):
    """Raised when a maintenance settings update was based on an outdated version"""

    def __init__(self, expected: Optional[int], actual: Optional[int]):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Maintenance settings version mismatch: expected {expected}, found {actual}")

# ============= USER CRUD =============

def get_user(db: Session, user_id: int):
    return db.query(models.User).filter(models.User.id == user_id).first()

def get_user_by_email(db: Session, email: str):
    return db.query(models.User).filter(models.User.email == email).first()

def get_user_by_username(db: Session, username: str):
    return db.query(models.User).filter(models.User.username == username).first()

def create_user(db: Session, user: schemas.UserCreate, role: str = models.UserRole.CUSTOMER.value):
    hashed_password = Hasher.get_password_hash(user.password)
    db_user = models.User(
        email=user.email,
        hashed_password=hashed_password,
        username=user.username,
        display_name=user.display_name,
        role=role
    )
    db.add(db_user)
    db.commit()
    db.refresh(db_user)
    return db_user

def authenticate_user(db: Session, identifier: str, password: str) -> Optional[models.User]:
    user = get_user_by_username(db, username=identifier)
    if not user:
        user = get_user_by_email(db, email=identifier)
    if not user:
        return None

    if not Hasher.verify_password(password, user.hashed_password):
        return None
    return user

# ============= MAINTENANCE SETTINGS CRUD =============

DEFAULT_MAINTENANCE_TITLE = "Produk Baru Segera Hadir!"
DEFAULT_MAINTENANCE_MESSAGE = "Kami sedang mempersiapkan koleksi terbaru untuk Anda. Terima kasih atas kesabaran Anda."
DEFAULT_COUNTDOWN_MESSAGE = "Produk baru akan tersedia dalam:"

def get_maintenance_settings(db: Session) -> Optional[models.MaintenanceSettings]:
    #singleton: the oldest row wins if more than one was ever inserted
    return db.query(models.MaintenanceSettings).order_by(models.MaintenanceSettings.id.asc()).first()

def create_maintenance_settings(db: Session, data: Optional[schemas.MaintenanceSettingsCreate] = None) -> models.MaintenanceSettings:
    data = data or schemas.MaintenanceSettingsCreate()
    db_settings = models.MaintenanceSettings(
        is_enabled=data.enabled,
        maintenance_start=data.window_start,
        maintenance_end=data.window_end,
        title=data.title if data.title is not None else DEFAULT_MAINTENANCE_TITLE,
        message=data.message if data.message is not None else DEFAULT_MAINTENANCE_MESSAGE,
        countdown_message=data.countdown_label if data.countdown_label is not None else DEFAULT_COUNTDOWN_MESSAGE,
    )
    db.add(db_settings)
    db.commit()
    db.refresh(db_settings)
    return db_settings

def update_maintenance_settings(
    db: Session,
    db_settings: models.MaintenanceSettings,
    update: schemas.MaintenanceSettingsUpdate
) -> models.MaintenanceSettings:
    if update.version is not None and update.version != db_settings.version:
        raise StaleVersionError(update.version, db_settings.version)

    fields = update.model_dump(exclude_unset=True, exclude={"version"})
    column_names = {
        "enabled": "is_enabled",
        "window_start": "maintenance_start",
        "window_end": "maintenance_end",
        "title": "title",
        "message": "message",
        "countdown_label": "countdown_message",
    }
    for field, value in fields.items():
        setattr(db_settings, column_names[field], value)

    try:
        db.commit()
    except StaleDataError:
        #another writer committed between our read and our flush
        db.rollback()
        db.refresh(db_settings)
        raise StaleVersionError(update.version, db_settings.version)

    db.refresh(db_settings)
    return db_settings

# ============= AUDIT LOGS =============

def create_audit_log(
    db: Session,
    action: str,
    user_id: int = None,
    resource_type: str = None,
    resource_id: str = None,
    ip_address: str = None,
    user_agent: str = None,
    details: str = None,
    success: bool = True
):
    audit_log = models.AuditLog(
        action=action,
        user_id=user_id,
        resource_type=resource_type,
        resource_id=resource_id,
        ip_address=ip_address,
        user_agent=user_agent,
        details=details,
        success=success
    )
    db.add(audit_log)
    db.commit()
    return audit_log

def get_audit_logs(
    db: Session,
    user_id: int = None,
    action: str = None,
    skip: int = 0,
    limit: int = 100
):
    query = db.query(models.AuditLog)
    if user_id:
        query = query.filter(models.AuditLog.user_id == user_id)
    if action:
        query = query.filter(models.AuditLog.action == action)
    return query.order_by(models.AuditLog.timestamp.desc()).offset(skip).limit(limit).all()
