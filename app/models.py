from sqlalchemy import Boolean, Column, Integer, String, ForeignKey, DateTime, Text
from sqlalchemy.orm import relationship
from datetime import datetime
import enum
from .database import Base

# ============= ENUMS =============

class UserRole(str, enum.Enum):
    ADMIN = "admin"
    CUSTOMER = "customer"

# ============= USER MODEL =============

class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String, unique=True, index=True)
    email = Column(String, unique=True, index=True)
    hashed_password = Column(String)
    is_active = Column(Boolean, default=True)
    role = Column(String, default=UserRole.CUSTOMER.value, nullable=False)
    display_name = Column(String, nullable=True)

    #timestamp for when user account was created
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value

# ============= MAINTENANCE SETTINGS MODEL =============

class MaintenanceSettings(Base):
    """Singleton row holding the storefront maintenance window"""
    __tablename__ = "maintenance_settings"

    id = Column(Integer, primary_key=True, index=True)
    is_enabled = Column(Boolean, default=False, nullable=False)
    maintenance_start = Column(DateTime(timezone=True), nullable=True)
    maintenance_end = Column(DateTime(timezone=True), nullable=True)

    #display payload for the notice, not used when gating
    title = Column(String(200), nullable=False, default="")
    message = Column(Text, nullable=False, default="")
    countdown_message = Column(String(200), nullable=False, default="")

    #bumped by SQLAlchemy on every UPDATE, stale writers get StaleDataError
    version = Column(Integer, nullable=False, default=1)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    __mapper_args__ = {"version_id_col": version}

# ============= AUDIT MODEL =============

class AuditLog(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, index=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=True)  #nullable for system actions
    action = Column(String, nullable=False, index=True)  #e.g. "maintenance.enabled", "login.success"
    resource_type = Column(String, nullable=True)  #e.g. "user", "maintenance_settings"
    resource_id = Column(String, nullable=True)  #ID of affected resource
    ip_address = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    details = Column(Text, nullable=True)  #JSON or text details
    success = Column(Boolean, default=True, nullable=False)

    user = relationship("User")
