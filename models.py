"""
Single Database Multi-Tenant Models
This file contains models that are shared across tenants and the tenant-scoped
directory models (branches, students) the fee ledger joins against
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Date, Enum, Index, UniqueConstraint
from sqlalchemy.orm import declarative_base, relationship
from flask_login import UserMixin
from werkzeug.security import generate_password_hash, check_password_hash
from datetime import datetime, date
import enum

Base = declarative_base()

# ===== TENANT MODEL =====
class Tenant(Base):
    """An academy; every tenant-scoped row carries its id"""
    __tablename__ = 'tenants'

    id = Column(Integer, primary_key=True)
    name = Column(String(200), nullable=False)
    slug = Column(String(100), unique=True, nullable=False)  # URL identifier
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    users = relationship("User", back_populates="tenant", cascade="all, delete-orphan")

    def __repr__(self):
        return f'<Tenant {self.name} ({self.slug})>'

# ===== USER MODEL =====
class User(Base, UserMixin):
    __tablename__ = 'users'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'username', name='unique_tenant_username'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    username = Column(String(80), nullable=False)
    email = Column(String(120), nullable=False)
    password_hash = Column(String(255), nullable=False)
    role = Column(String(20), default='receptionist')  # school_admin, manager, receptionist
    first_name = Column(String(50))
    last_name = Column(String(50))
    is_active = Column(Boolean, default=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant", back_populates="users")

    def set_password(self, password):
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        return check_password_hash(self.password_hash, password)

    @property
    def full_name(self):
        return f"{self.first_name or ''} {self.last_name or ''}".strip()

    def get_id(self):
        """Return user ID in format needed by Flask-Login"""
        return f"school_{self.tenant_id}_{self.id}"

    def __repr__(self):
        return f'<User {self.username} ({self.role})>'

# ===== ENUMS FOR TENANT-SCOPED MODELS =====
class StudentStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"
    SUSPENDED = "suspended"

# ===== TENANT-SCOPED MODELS =====

class Branch(Base):
    __tablename__ = 'branches'

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    name = Column(String(100), nullable=False)
    address = Column(Text)
    phone = Column(String(20))
    created_at = Column(DateTime, default=datetime.utcnow)

    tenant = relationship("Tenant")
    students = relationship("Student", back_populates="branch")

    def __repr__(self):
        return f'<Branch {self.name}>'


class Student(Base):
    __tablename__ = 'students'
    __table_args__ = (
        Index('idx_student_tenant', 'tenant_id'),
        Index('idx_student_status', 'status'),
    )

    id = Column(Integer, primary_key=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id'), nullable=False)
    branch_id = Column(Integer, ForeignKey('branches.id'), nullable=True)

    # Basic Information
    name = Column(String(100), nullable=False)
    email = Column(String(120))
    phone = Column(String(20))
    parent_phone = Column(String(20))
    joining_date = Column(Date, default=date.today)
    status = Column(Enum(StudentStatusEnum, values_callable=lambda obj: [e.value for e in obj]), default=StudentStatusEnum.ACTIVE)

    # Timestamps
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    branch = relationship("Branch", back_populates="students")

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'branch': self.branch.name if self.branch else None,
            'status': self.status.value if self.status else None
        }

    def __repr__(self):
        return f'<Student {self.name} ({self.id})>'
