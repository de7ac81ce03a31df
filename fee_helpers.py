"""
Fee Ledger Helper Functions
Contains the business logic for monthly fee generation, oldest-first payment
distribution, the fee calculation view, receipts and the stand-in payment gateway
"""

from datetime import datetime, date
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
import calendar
import logging
import random
import string
from dateutil.relativedelta import relativedelta
from flask import current_app, has_app_context
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session, joinedload, selectinload
from config import Config
from db_single import get_active_student
from fee_models import (
    FeeStructure, Enrollment, StudentFee, Payment, PaymentAllocation,
    FeeStatusEnum, EnrollmentStatusEnum, PaymentMethodEnum
)
from models import Student, StudentStatusEnum

logger = logging.getLogger(__name__)

ZERO = Decimal('0.00')
CENT = Decimal('0.01')
AMOUNT_LIMIT = Decimal('100000000')  # DECIMAL(10, 2) holds at most 99999999.99
RECEIPT_NUMBER_ATTEMPTS = 5


# ===== ERRORS =====

class FeeLedgerError(Exception):
    """Base class for fee ledger failures"""


class FeeValidationError(FeeLedgerError, ValueError):
    """Request rejected before any ledger mutation"""


class FeeNotFoundError(FeeLedgerError, LookupError):
    """Referenced student, fee structure, enrollment or payment does not exist"""


class PaymentDeclinedError(FeeLedgerError):
    """The payment gateway refused the charge"""


# ===== SETTINGS & PARSING =====

def get_ledger_setting(name: str):
    """Read a ledger setting from the running app, falling back to Config"""
    if has_app_context():
        return current_app.config.get(name, getattr(Config, name))
    return getattr(Config, name)


def to_money(value, field: str = 'amount') -> Decimal:
    """
    Parse a user supplied amount into a 2-place Decimal.

    Amounts finer than a cent are refused rather than rounded, so whatever is
    distributed adds up to exactly what the payer handed over.
    """
    if value is None or value == '' or isinstance(value, bool):
        raise FeeValidationError(f"{field.capitalize()} is required")
    try:
        money = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        raise FeeValidationError(f"Invalid {field}: {value}")
    if not money.is_finite():
        raise FeeValidationError(f"Invalid {field}: {value}")
    if abs(money) >= AMOUNT_LIMIT:
        raise FeeValidationError(f"{field.capitalize()} must be less than {AMOUNT_LIMIT}")

    # Below the limit the quantized value fits the default 28-digit context
    quantized = money.quantize(CENT, rounding=ROUND_HALF_UP)
    if quantized != money:
        raise FeeValidationError(f"Invalid {field}: {value} (at most 2 decimal places)")
    return quantized


def parse_payment_method(value) -> PaymentMethodEnum:
    """Accept an enum, its value ('bank_transfer') or its label ('Bank Transfer')"""
    if isinstance(value, PaymentMethodEnum):
        return value
    if value is None or not str(value).strip():
        raise FeeValidationError("Payment method is required")
    key = str(value).strip().lower().replace(' ', '_')
    try:
        return PaymentMethodEnum(key)
    except ValueError:
        raise FeeValidationError(f"Unknown payment method: {value}")


def parse_date(value, field: str = 'date') -> date:
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date()
    except ValueError:
        raise FeeValidationError(f"Invalid {field}: {value} (expected YYYY-MM-DD)")


def determine_fee_status(amount: Decimal, paid_amount: Decimal) -> FeeStatusEnum:
    """Determine fee status based on payment"""
    if paid_amount >= amount:
        return FeeStatusEnum.PAID
    elif paid_amount > 0:
        return FeeStatusEnum.PARTIAL
    else:
        return FeeStatusEnum.PENDING


def due_date_for_period(month: int, year: int, due_day: int = None) -> date:
    """Due date of a monthly fee, clamped to the month's last day"""
    due_day = due_day or get_ledger_setting('FEE_DUE_DAY')
    last_day = calendar.monthrange(year, month)[1]
    return date(year, month, min(due_day, last_day))


# ===== RECEIPT NUMBER GENERATION =====

def generate_receipt_number(session: Session, tenant_id: int, on: date = None, after: str = None) -> str:
    """
    Generate unique receipt number for tenant.

    `after` is a number another transaction has already taken; the sequence
    continues past it even when that row is not visible to this session yet.
    """
    on = on or date.today()
    prefix = f"RCP-{on.year}{on.month:02d}"

    count = session.query(Payment).filter(
        Payment.tenant_id == tenant_id,
        Payment.receipt_number.like(f"{prefix}-%")
    ).count()
    if after and after.startswith(f"{prefix}-"):
        count = max(count, int(after.rsplit('-', 1)[1]))

    receipt_number = f"{prefix}-{count + 1:05d}"

    # Ensure uniqueness
    while session.query(Payment).filter_by(receipt_number=receipt_number, tenant_id=tenant_id).first():
        count += 1
        receipt_number = f"{prefix}-{count + 1:05d}"

    return receipt_number


# ===== MONTHLY FEE GENERATION =====

def get_active_enrollments(session: Session, tenant_id: int, student_id: int) -> list:
    return session.query(Enrollment).options(
        joinedload(Enrollment.fee_structure)
    ).filter_by(
        tenant_id=tenant_id,
        student_id=student_id,
        status=EnrollmentStatusEnum.ACTIVE
    ).order_by(Enrollment.id).all()


def ensure_monthly_fees(session: Session, tenant_id: int, student_id: int,
                        reference_date: date = None, due_day: int = None) -> list:
    """
    Create the reference month's StudentFee for every active enrollment that
    does not have one yet.

    Each insert runs in its own SAVEPOINT so a failure for one enrollment
    (typically the unique period constraint tripping because a concurrent
    request generated the same fee) is logged and skipped without undoing the
    others. Nothing is committed here; the caller owns the transaction.

    Returns the list of newly created StudentFee rows.
    """
    reference_date = reference_date or date.today()
    month, year = reference_date.month, reference_date.year
    due_date = due_date_for_period(month, year, due_day)

    created = []
    for enrollment in get_active_enrollments(session, tenant_id, student_id):
        existing = session.query(StudentFee.id).filter_by(
            enrollment_id=enrollment.id,
            month=month,
            year=year
        ).first()
        if existing:
            continue

        try:
            with session.begin_nested():
                student_fee = StudentFee(
                    tenant_id=tenant_id,
                    student_id=student_id,
                    enrollment_id=enrollment.id,
                    month=month,
                    year=year,
                    amount=enrollment.fee_structure.amount,
                    paid_amount=ZERO,
                    status=FeeStatusEnum.PENDING,
                    due_date=due_date
                )
                session.add(student_fee)
        except IntegrityError as e:
            logger.warning(f"Fee for enrollment {enrollment.id} {month}/{year} already exists, skipped: {e.orig}")
            continue
        except SQLAlchemyError as e:
            logger.error(f"Failed to generate fee for enrollment {enrollment.id} {month}/{year}: {e}")
            continue

        created.append(student_fee)
        logger.info(f"Generated fee for student {student_id}, enrollment {enrollment.id} for {month}/{year}")

    if created and get_ledger_setting('OVERPAYMENT_POLICY') == 'credit':
        apply_student_credit(session, tenant_id, student_id)

    return created


def generate_monthly_fees_for_tenant(session: Session, tenant_id: int, reference_date: date = None) -> int:
    """Generate the reference month's fees for every active student of an academy"""
    students = session.query(Student).filter_by(
        tenant_id=tenant_id,
        status=StudentStatusEnum.ACTIVE
    ).order_by(Student.id).all()

    count = 0
    for student in students:
        try:
            count += len(ensure_monthly_fees(session, tenant_id, student.id, reference_date))
            session.commit()
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Error generating fees for student {student.id}: {e}")
            continue

    return count


# ===== PAYMENT DISTRIBUTION =====

def distribute_payment(session: Session, student_id: int, payment_amount, payment: Payment = None,
                       tenant_id: int = None) -> Decimal:
    """
    Apply an amount across the student's unpaid fees, oldest period first.

    Outstanding rows are read FOR UPDATE. When a payment is given, one
    PaymentAllocation row is written per fee touched. Returns the part of the
    amount left over once every outstanding fee is settled.
    """
    remaining = to_money(payment_amount, 'payment amount')
    if remaining <= 0:
        raise FeeValidationError("Payment amount must be greater than zero")

    query = session.query(StudentFee).filter(
        StudentFee.student_id == student_id,
        StudentFee.status != FeeStatusEnum.PAID
    )
    if tenant_id is not None:
        query = query.filter(StudentFee.tenant_id == tenant_id)

    outstanding = query.order_by(
        StudentFee.year.asc(), StudentFee.month.asc(), StudentFee.id.asc()
    ).with_for_update().all()

    for student_fee in outstanding:
        if remaining <= 0:
            break

        paid_amount = student_fee.paid_amount or ZERO
        due = student_fee.amount - paid_amount
        if due <= 0:
            logger.warning(f"StudentFee {student_fee.id} is marked {student_fee.status.value} but has nothing due, skipped")
            continue

        applied = min(remaining, due)
        student_fee.paid_amount = paid_amount + applied
        student_fee.status = determine_fee_status(student_fee.amount, student_fee.paid_amount)

        if payment is not None:
            session.add(PaymentAllocation(
                tenant_id=student_fee.tenant_id,
                payment=payment,
                student_fee=student_fee,
                amount=applied
            ))

        remaining -= applied

    session.flush()
    return remaining


# ===== OVERPAYMENT CREDIT =====

def get_unallocated_payments(session: Session, tenant_id: int, student_id: int) -> list:
    """(payment, unallocated amount) pairs for payments with money left, oldest first"""
    payments = session.query(Payment).options(
        selectinload(Payment.allocations)
    ).filter_by(
        tenant_id=tenant_id,
        student_id=student_id
    ).order_by(Payment.payment_date, Payment.id).all()

    result = []
    for payment in payments:
        unallocated = payment.amount - payment.allocated_amount
        if unallocated > 0:
            result.append((payment, unallocated))
    return result


def get_student_credit(session: Session, tenant_id: int, student_id: int) -> Decimal:
    return sum((amount for _, amount in get_unallocated_payments(session, tenant_id, student_id)), ZERO)


def apply_student_credit(session: Session, tenant_id: int, student_id: int) -> Decimal:
    """Allocate money left over from earlier overpayments to outstanding fees"""
    applied_total = ZERO
    for payment, unallocated in get_unallocated_payments(session, tenant_id, student_id):
        remainder = distribute_payment(session, student_id, unallocated, payment=payment, tenant_id=tenant_id)
        applied_total += unallocated - remainder
        if remainder > 0:
            break  # nothing left to pay

    if applied_total > 0:
        logger.info(f"Applied credit {applied_total} to student {student_id}")
    return applied_total


def get_outstanding_amount(session: Session, tenant_id: int, student_id: int) -> Decimal:
    fees = session.query(StudentFee).filter(
        StudentFee.tenant_id == tenant_id,
        StudentFee.student_id == student_id,
        StudentFee.status != FeeStatusEnum.PAID
    ).all()
    return sum((f.balance_amount for f in fees if f.balance_amount > 0), ZERO)


def check_overpayment_policy(session: Session, tenant_id: int, student_id: int, amount: Decimal):
    """Under the 'reject' policy, refuse a payment larger than what the student owes"""
    if get_ledger_setting('OVERPAYMENT_POLICY') != 'reject':
        return
    outstanding = get_outstanding_amount(session, tenant_id, student_id)
    if amount > outstanding:
        raise FeeValidationError(f"Payment amount ({amount}) exceeds outstanding balance ({outstanding})")


# ===== FEE COLLECTION =====

def collect_fee_payment(session: Session, tenant_id: int, student_id: int, amount, payment_method,
                        notes: str = None, payment_reference: str = None, collected_by: int = None,
                        payment_date: date = None) -> dict:
    """
    Record a payment and distribute it over the student's outstanding fees.

    Runs as one transaction: the current month's fees are generated, the
    Payment is inserted and the amount is distributed with allocation rows.
    Any failure rolls everything back.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise FeeValidationError("Amount must be greater than zero")
    payment_method = parse_payment_method(payment_method)
    payment_date = parse_date(payment_date, 'payment date') or date.today()

    try:
        student = get_active_student(session, tenant_id, student_id, lock=True)
        if not student:
            raise FeeValidationError(f"Student {student_id} not found or not active")

        ensure_monthly_fees(session, tenant_id, student_id)
        check_overpayment_policy(session, tenant_id, student_id, amount)

        payment = None
        receipt_number = None
        for _ in range(RECEIPT_NUMBER_ATTEMPTS):
            receipt_number = generate_receipt_number(session, tenant_id, payment_date, after=receipt_number)
            try:
                with session.begin_nested():
                    payment = Payment(
                        tenant_id=tenant_id,
                        student_id=student_id,
                        receipt_number=receipt_number,
                        amount=amount,
                        payment_date=payment_date,
                        payment_method=payment_method,
                        payment_reference=payment_reference,
                        notes=notes,
                        collected_by=collected_by
                    )
                    session.add(payment)
                break
            except IntegrityError as e:
                # A concurrent collection in the same academy took this number
                logger.warning(f"Receipt number {receipt_number} already used, retrying: {e.orig}")
                payment = None
        if payment is None:
            raise FeeLedgerError(f"Could not allocate a receipt number after {RECEIPT_NUMBER_ATTEMPTS} attempts")

        remainder = distribute_payment(session, student_id, amount, payment=payment, tenant_id=tenant_id)
        session.commit()
    except Exception:
        session.rollback()
        raise

    logger.info(f"Recorded payment {payment.receipt_number} of {amount} for student {student_id} (remainder {remainder})")

    return {
        'paymentId': payment.id,
        'receiptNumber': payment.receipt_number,
        'amountApplied': float(amount - remainder),
        'remainder': float(remainder),
        'allocations': [a.to_dict() for a in payment.allocations]
    }


# ===== PAYMENT GATEWAY (SIMULATED) =====

def simulate_gateway_charge(amount: Decimal, payment_method: PaymentMethodEnum = PaymentMethodEnum.ONLINE,
                            mode: str = None) -> tuple:
    """Stand-in for a card/UPI gateway. Returns (approved, reference)"""
    mode = mode or get_ledger_setting('PAYMENT_GATEWAY_MODE')
    reference = 'SIM-' + ''.join(random.choices(string.ascii_uppercase + string.digits, k=10))

    if mode == 'decline':
        approved = False
    elif mode == 'random':
        approved = random.random() < 0.8
    else:
        approved = True

    logger.info(f"Gateway charge {reference} of {amount} via {payment_method.value}: {'approved' if approved else 'declined'}")
    return approved, reference


def process_online_payment(session: Session, tenant_id: int, student_id: int, amount,
                           collected_by: int = None, notes: str = None) -> dict:
    """
    Charge the simulated gateway, then collect the payment on approval.

    Everything that can refuse the payment runs before the charge. The
    generated fees and the student lock stay in the open transaction, which
    collect_fee_payment then commits or a decline rolls back.
    """
    amount = to_money(amount)
    if amount <= 0:
        raise FeeValidationError("Amount must be greater than zero")

    try:
        if not get_active_student(session, tenant_id, student_id, lock=True):
            raise FeeValidationError(f"Student {student_id} not found or not active")

        ensure_monthly_fees(session, tenant_id, student_id)
        check_overpayment_policy(session, tenant_id, student_id, amount)

        approved, reference = simulate_gateway_charge(amount, PaymentMethodEnum.ONLINE)
        if not approved:
            raise PaymentDeclinedError(f"Payment declined by gateway (reference {reference})")
    except Exception:
        session.rollback()
        raise

    return collect_fee_payment(
        session, tenant_id, student_id, amount, PaymentMethodEnum.ONLINE,
        notes=notes, payment_reference=reference, collected_by=collected_by
    )


# ===== FEE CALCULATION VIEW =====

def calculate_student_fees(session: Session, tenant_id: int, student_id: int, today: date = None) -> dict:
    """
    Fee summary used to pre-fill the collection form.

    Generates the current month's fees first, then aggregates every fee row of
    the student; nothing is cached. A fee due today is not overdue yet.
    """
    today = today or date.today()

    student = session.query(Student).filter_by(id=student_id, tenant_id=tenant_id).first()
    if not student:
        raise FeeNotFoundError(f"Student {student_id} not found")

    if ensure_monthly_fees(session, tenant_id, student_id, reference_date=today):
        session.commit()

    enrollments = get_active_enrollments(session, tenant_id, student_id)
    monthly_fee = sum((e.fee_structure.amount for e in enrollments), ZERO)

    fees = session.query(StudentFee).filter_by(
        tenant_id=tenant_id,
        student_id=student_id
    ).all()

    total_paid = sum((f.paid_amount or ZERO for f in fees), ZERO)
    total_owed = sum((f.amount for f in fees), ZERO)
    pending_amount = total_owed - total_paid
    overdue_amount = sum(
        (f.balance_amount for f in fees if f.status != FeeStatusEnum.PAID and f.due_date < today),
        ZERO
    )
    suggested_amount = pending_amount if pending_amount > 0 else monthly_fee

    per_charge = []
    for enrollment in enrollments:
        enrollment_pending = sum(
            (f.balance_amount for f in fees if f.enrollment_id == enrollment.id),
            ZERO
        )
        per_charge.append({
            'enrollmentId': enrollment.id,
            'feeStructureId': enrollment.fee_structure_id,
            'name': enrollment.fee_structure.name,
            'monthlyFee': float(enrollment.fee_structure.amount),
            'pendingAmount': float(enrollment_pending)
        })

    next_month = today + relativedelta(months=1)

    return {
        'studentId': student_id,
        'monthlyFee': float(monthly_fee),
        'totalPaid': float(total_paid),
        'pendingAmount': float(pending_amount),
        'overdueAmount': float(overdue_amount),
        'suggestedAmount': float(suggested_amount),
        'creditBalance': float(get_student_credit(session, tenant_id, student_id)),
        'nextDueDate': due_date_for_period(next_month.month, next_month.year).isoformat(),
        'perCharge': per_charge
    }


def get_student_fee_details(session: Session, tenant_id: int, student_id: int) -> dict:
    """All fee rows and payments of a student, newest period first"""
    student = session.query(Student).filter_by(id=student_id, tenant_id=tenant_id).first()
    if not student:
        raise FeeNotFoundError(f"Student {student_id} not found")

    fees = session.query(StudentFee).options(
        joinedload(StudentFee.enrollment).joinedload(Enrollment.fee_structure)
    ).filter_by(
        tenant_id=tenant_id,
        student_id=student_id
    ).order_by(StudentFee.year.desc(), StudentFee.month.desc(), StudentFee.id).all()

    payments = session.query(Payment).options(
        selectinload(Payment.allocations).joinedload(PaymentAllocation.student_fee)
    ).filter_by(
        tenant_id=tenant_id,
        student_id=student_id
    ).order_by(Payment.payment_date.desc(), Payment.id.desc()).all()

    return {
        'student': student.to_dict(),
        'fees': [f.to_dict() for f in fees],
        'payments': [p.to_dict() for p in payments],
        'creditBalance': float(get_student_credit(session, tenant_id, student_id))
    }


def get_payment(session: Session, tenant_id: int, payment_id: int) -> Payment:
    payment = session.query(Payment).options(
        selectinload(Payment.allocations).joinedload(PaymentAllocation.student_fee)
    ).filter_by(id=payment_id, tenant_id=tenant_id).first()
    if not payment:
        raise FeeNotFoundError(f"Payment {payment_id} not found")
    return payment


# ===== FEE STRUCTURE CATALOG =====

def list_fee_structures(session: Session, tenant_id: int, include_inactive: bool = False) -> list:
    query = session.query(FeeStructure).filter_by(tenant_id=tenant_id)
    if not include_inactive:
        query = query.filter_by(is_active=True)
    return query.order_by(FeeStructure.name).all()


def create_fee_structure(session: Session, tenant_id: int, name: str, amount,
                         description: str = None, created_by: int = None) -> FeeStructure:
    """Add a recurring monthly charge to the academy's catalog"""
    name = (name or '').strip()
    if not name:
        raise FeeValidationError("Fee structure name is required")
    amount = to_money(amount)
    if amount <= 0:
        raise FeeValidationError("Fee amount must be greater than zero")

    name_key = name.lower()
    existing = session.query(FeeStructure).filter_by(tenant_id=tenant_id, name_key=name_key).first()
    if existing:
        raise FeeValidationError(f"Fee structure '{existing.name}' already exists")

    fee_structure = FeeStructure(
        tenant_id=tenant_id,
        name=name,
        name_key=name_key,
        amount=amount,
        description=description,
        is_active=True,
        created_by=created_by
    )

    try:
        session.add(fee_structure)
        session.commit()
    except IntegrityError:
        session.rollback()
        raise FeeValidationError(f"Fee structure '{name}' already exists")

    logger.info(f"Created fee structure {name} ({amount}) for tenant {tenant_id}")
    return fee_structure


def update_fee_structure_amount(session: Session, tenant_id: int, fee_structure_id: int, amount) -> FeeStructure:
    """Change the charge used for future monthly fees; existing fees keep their amount"""
    amount = to_money(amount)
    if amount <= 0:
        raise FeeValidationError("Fee amount must be greater than zero")

    fee_structure = session.query(FeeStructure).filter_by(id=fee_structure_id, tenant_id=tenant_id).first()
    if not fee_structure:
        raise FeeNotFoundError(f"Fee structure {fee_structure_id} not found")

    old_amount = fee_structure.amount
    fee_structure.amount = amount
    session.commit()

    logger.info(f"Fee structure {fee_structure.name} amount changed {old_amount} -> {amount}")
    return fee_structure


# ===== ENROLLMENTS =====

def create_enrollment(session: Session, tenant_id: int, student_id: int, fee_structure_id: int,
                      start_date=None, created_by: int = None) -> Enrollment:
    """Enroll an active student in a program billed by the given fee structure"""
    if not get_active_student(session, tenant_id, student_id):
        raise FeeValidationError(f"Student {student_id} not found or not active")

    fee_structure = session.query(FeeStructure).filter_by(id=fee_structure_id, tenant_id=tenant_id).first()
    if not fee_structure:
        raise FeeNotFoundError(f"Fee structure {fee_structure_id} not found")
    if not fee_structure.is_active:
        raise FeeValidationError(f"Fee structure '{fee_structure.name}' is not active")

    existing = session.query(Enrollment).filter_by(
        tenant_id=tenant_id,
        student_id=student_id,
        fee_structure_id=fee_structure_id,
        status=EnrollmentStatusEnum.ACTIVE
    ).first()
    if existing:
        raise FeeValidationError(f"Student is already enrolled in '{fee_structure.name}'")

    enrollment = Enrollment(
        tenant_id=tenant_id,
        student_id=student_id,
        fee_structure_id=fee_structure_id,
        start_date=parse_date(start_date, 'start date') or date.today(),
        status=EnrollmentStatusEnum.ACTIVE,
        created_by=created_by
    )
    session.add(enrollment)
    session.commit()

    logger.info(f"Enrolled student {student_id} in {fee_structure.name}")
    return enrollment


def deactivate_enrollment(session: Session, tenant_id: int, enrollment_id: int) -> Enrollment:
    """Stop billing an enrollment; its fee history stays in place"""
    enrollment = session.query(Enrollment).filter_by(id=enrollment_id, tenant_id=tenant_id).first()
    if not enrollment:
        raise FeeNotFoundError(f"Enrollment {enrollment_id} not found")

    if enrollment.status == EnrollmentStatusEnum.ACTIVE:
        enrollment.status = EnrollmentStatusEnum.INACTIVE
        enrollment.ended_at = datetime.utcnow()
        session.commit()
        logger.info(f"Deactivated enrollment {enrollment_id}")

    return enrollment
