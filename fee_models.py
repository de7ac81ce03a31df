"""
Fee Management Models for the Multi-Tenant Academy System
This file contains the fee ledger models: fee structures, enrollments, monthly
student fees (invoices), payments and the allocations that link them
"""

from sqlalchemy import Column, Integer, String, Text, DateTime, Boolean, ForeignKey, Date, Enum, BigInteger, Index, UniqueConstraint, DECIMAL
from sqlalchemy.orm import relationship
from datetime import datetime, date
from decimal import Decimal
from models import Base
import enum

# BIGINT keys everywhere except SQLite, which only autoincrements INTEGER
BigIntId = BigInteger().with_variant(Integer, 'sqlite')


# ===== ENUMS =====

class FeeStatusEnum(enum.Enum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"


class EnrollmentStatusEnum(enum.Enum):
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentMethodEnum(enum.Enum):
    CASH = "cash"
    CARD = "card"
    UPI = "upi"
    BANK_TRANSFER = "bank_transfer"
    CHEQUE = "cheque"
    ONLINE = "online"


# ===== FEE STRUCTURE MODEL =====

class FeeStructure(Base):
    """Named recurring monthly charge, e.g. a program's tuition"""
    __tablename__ = 'fee_structures'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'name_key', name='unique_tenant_fee_structure_name'),
        Index('idx_fee_struct_tenant', 'tenant_id'),
        Index('idx_fee_struct_active', 'is_active'),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    name = Column(String(200), nullable=False)
    name_key = Column(String(200), nullable=False)  # lower-cased name for case-insensitive uniqueness
    amount = Column(DECIMAL(10, 2), nullable=False)
    description = Column(Text, nullable=True)
    is_active = Column(Boolean, default=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    enrollments = relationship("Enrollment", back_populates="fee_structure")

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'amount': float(self.amount),
            'description': self.description,
            'is_active': self.is_active
        }

    def __repr__(self):
        return f"<FeeStructure {self.name}: {self.amount}>"


# ===== ENROLLMENT MODEL =====

class Enrollment(Base):
    """Links a student to a fee structure; one student may hold several"""
    __tablename__ = 'student_enrollments'
    __table_args__ = (
        Index('idx_enrollment_tenant', 'tenant_id'),
        Index('idx_enrollment_student', 'student_id'),
        Index('idx_enrollment_status', 'status'),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    fee_structure_id = Column(BigIntId, ForeignKey('fee_structures.id'), nullable=False)
    start_date = Column(Date, nullable=False, default=date.today)
    status = Column(Enum(EnrollmentStatusEnum, values_callable=lambda obj: [e.value for e in obj]), default=EnrollmentStatusEnum.ACTIVE)
    ended_at = Column(DateTime, nullable=True)
    created_by = Column(Integer, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student = relationship("Student", backref="enrollments")
    fee_structure = relationship("FeeStructure", back_populates="enrollments")
    student_fees = relationship("StudentFee", back_populates="enrollment")

    def to_dict(self):
        return {
            'id': self.id,
            'student_id': self.student_id,
            'fee_structure_id': self.fee_structure_id,
            'fee_structure': self.fee_structure.name if self.fee_structure else None,
            'start_date': self.start_date.isoformat() if self.start_date else None,
            'status': self.status.value if self.status else None
        }

    def __repr__(self):
        return f"<Enrollment student_id={self.student_id} fee_structure_id={self.fee_structure_id} status={self.status.value}>"


# ===== STUDENT FEE (MONTHLY INVOICE) MODEL =====

class StudentFee(Base):
    """One billing period's charge for one enrollment"""
    __tablename__ = 'student_fees'
    __table_args__ = (
        UniqueConstraint('enrollment_id', 'month', 'year', name='unique_enrollment_period'),
        Index('idx_student_fee_tenant', 'tenant_id'),
        Index('idx_student_fee_student', 'student_id'),
        Index('idx_student_fee_status', 'status'),
        Index('idx_student_fee_period', 'year', 'month'),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    enrollment_id = Column(BigIntId, ForeignKey('student_enrollments.id'), nullable=False)
    month = Column(Integer, nullable=False)  # 1-12
    year = Column(Integer, nullable=False)

    # Amounts
    amount = Column(DECIMAL(10, 2), nullable=False)  # charge at generation time
    paid_amount = Column(DECIMAL(10, 2), nullable=False, default=Decimal('0.00'))

    # Status and dates
    status = Column(Enum(FeeStatusEnum, values_callable=lambda obj: [e.value for e in obj]), default=FeeStatusEnum.PENDING)
    due_date = Column(Date, nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student = relationship("Student", backref="fees")
    enrollment = relationship("Enrollment", back_populates="student_fees")
    allocations = relationship("PaymentAllocation", back_populates="student_fee", order_by="PaymentAllocation.id")

    @property
    def balance_amount(self):
        return (self.amount or Decimal('0.00')) - (self.paid_amount or Decimal('0.00'))

    def to_dict(self):
        return {
            'id': self.id,
            'enrollment_id': self.enrollment_id,
            'fee_structure': self.enrollment.fee_structure.name if self.enrollment and self.enrollment.fee_structure else None,
            'month': self.month,
            'year': self.year,
            'amount': float(self.amount),
            'paid_amount': float(self.paid_amount or 0),
            'balance_amount': float(self.balance_amount),
            'status': self.status.value if self.status else None,
            'due_date': self.due_date.isoformat() if self.due_date else None
        }

    def __repr__(self):
        return f"<StudentFee student_id={self.student_id} {self.month}/{self.year} status={self.status.value}>"


# ===== PAYMENT MODEL =====

class Payment(Base):
    """Immutable receipt of money received from a student"""
    __tablename__ = 'payments'
    __table_args__ = (
        UniqueConstraint('tenant_id', 'receipt_number', name='unique_tenant_receipt_number'),
        Index('idx_payment_tenant', 'tenant_id'),
        Index('idx_payment_student', 'student_id'),
        Index('idx_payment_date', 'payment_date'),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    student_id = Column(Integer, ForeignKey('students.id', ondelete='CASCADE'), nullable=False)
    receipt_number = Column(String(50), nullable=False)

    amount = Column(DECIMAL(10, 2), nullable=False)
    payment_date = Column(Date, nullable=False, default=date.today)
    payment_method = Column(Enum(PaymentMethodEnum, values_callable=lambda obj: [e.value for e in obj]), nullable=False)
    payment_reference = Column(String(100), nullable=True)  # Cheque/Transaction number
    notes = Column(Text, nullable=True)

    # User tracking
    collected_by = Column(Integer, ForeignKey('users.id', ondelete='SET NULL'), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    student = relationship("Student", backref="payments")
    collector = relationship("User")
    allocations = relationship("PaymentAllocation", back_populates="payment", order_by="PaymentAllocation.id")

    @property
    def allocated_amount(self):
        return sum((a.amount for a in self.allocations), Decimal('0.00'))

    def to_dict(self):
        return {
            'id': self.id,
            'receipt_number': self.receipt_number,
            'student_id': self.student_id,
            'amount': float(self.amount),
            'payment_date': self.payment_date.isoformat() if self.payment_date else None,
            'payment_method': self.payment_method.value if self.payment_method else None,
            'payment_reference': self.payment_reference,
            'notes': self.notes,
            'allocations': [a.to_dict() for a in self.allocations]
        }

    def __repr__(self):
        return f"<Payment {self.receipt_number} amount={self.amount}>"


# ===== PAYMENT ALLOCATION MODEL =====

class PaymentAllocation(Base):
    """Portion of a payment applied to one student fee"""
    __tablename__ = 'payment_allocations'
    __table_args__ = (
        Index('idx_allocation_tenant', 'tenant_id'),
        Index('idx_allocation_payment', 'payment_id'),
        Index('idx_allocation_student_fee', 'student_fee_id'),
    )

    id = Column(BigIntId, primary_key=True, autoincrement=True)
    tenant_id = Column(Integer, ForeignKey('tenants.id', ondelete='CASCADE'), nullable=False)
    payment_id = Column(BigIntId, ForeignKey('payments.id'), nullable=False)
    student_fee_id = Column(BigIntId, ForeignKey('student_fees.id'), nullable=False)
    amount = Column(DECIMAL(10, 2), nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    # Relationships
    tenant = relationship("Tenant")
    payment = relationship("Payment", back_populates="allocations")
    student_fee = relationship("StudentFee", back_populates="allocations")

    def to_dict(self):
        return {
            'id': self.id,
            'payment_id': self.payment_id,
            'student_fee_id': self.student_fee_id,
            'month': self.student_fee.month if self.student_fee else None,
            'year': self.student_fee.year if self.student_fee else None,
            'amount': float(self.amount)
        }

    def __repr__(self):
        return f"<PaymentAllocation payment_id={self.payment_id} student_fee_id={self.student_fee_id} amount={self.amount}>"
