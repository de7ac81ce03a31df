import pytest
from datetime import date
from decimal import Decimal
from sqlalchemy.exc import IntegrityError

from fee_helpers import (
    ensure_monthly_fees, generate_monthly_fees_for_tenant, due_date_for_period,
    update_fee_structure_amount, deactivate_enrollment, create_enrollment
)
from fee_models import StudentFee, FeeStatusEnum


def _fees_for(session, student_id, month, year):
    return session.query(StudentFee).filter_by(student_id=student_id, month=month, year=year).all()


def test_generates_one_fee_per_active_enrollment(db_session, academy):
    create_enrollment(db_session, academy.tenant_id, academy.student_id, academy.yoga_id)

    created = ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=date(2024, 3, 17))
    db_session.commit()

    assert len(created) == 2
    fees = _fees_for(db_session, academy.student_id, 3, 2024)
    assert sorted(f.amount for f in fees) == [Decimal('1500.00'), Decimal('2000.00')]
    for fee in fees:
        assert fee.paid_amount == Decimal('0')
        assert fee.status == FeeStatusEnum.PENDING
        assert fee.due_date == date(2024, 3, 5)


def test_generation_is_idempotent(db_session, academy):
    reference = date(2024, 4, 1)

    first = ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=reference)
    second = ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=reference)
    third = ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=reference)
    db_session.commit()

    assert len(first) == 1
    assert second == []
    assert third == []
    assert len(_fees_for(db_session, academy.student_id, 4, 2024)) == 1


def test_each_period_gets_its_own_fee(db_session, academy):
    for month in (1, 2, 3):
        ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=date(2024, month, 20))
    db_session.commit()

    periods = db_session.query(StudentFee.month).filter_by(student_id=academy.student_id).order_by(StudentFee.month).all()
    assert [p.month for p in periods] == [1, 2, 3]


def test_inactive_enrollment_is_not_billed(db_session, academy):
    deactivate_enrollment(db_session, academy.tenant_id, academy.enrollment_id)

    created = ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=date(2024, 5, 1))

    assert created == []
    assert _fees_for(db_session, academy.student_id, 5, 2024) == []


def test_amount_change_only_affects_future_fees(db_session, academy):
    ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=date(2024, 1, 10))
    db_session.commit()

    update_fee_structure_amount(db_session, academy.tenant_id, academy.karate_id, '2500')
    ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=date(2024, 2, 10))
    db_session.commit()

    january = _fees_for(db_session, academy.student_id, 1, 2024)[0]
    february = _fees_for(db_session, academy.student_id, 2, 2024)[0]
    assert january.amount == Decimal('2000.00')
    assert february.amount == Decimal('2500.00')


def test_duplicate_period_is_refused_by_the_database(db_session, academy, make_fee):
    make_fee(6, 2024, 2000)

    db_session.add(StudentFee(
        tenant_id=academy.tenant_id,
        student_id=academy.student_id,
        enrollment_id=academy.enrollment_id,
        month=6,
        year=2024,
        amount=Decimal('2000.00'),
        paid_amount=Decimal('0.00'),
        status=FeeStatusEnum.PENDING,
        due_date=date(2024, 6, 5)
    ))
    with pytest.raises(IntegrityError):
        db_session.flush()
    db_session.rollback()


def test_lost_race_is_skipped_without_losing_other_fees(db_session, academy, monkeypatch):
    """A fee inserted by a concurrent request between the check and the insert is skipped"""
    create_enrollment(db_session, academy.tenant_id, academy.student_id, academy.yoga_id)
    reference = date(2024, 7, 1)

    # Another request already generated the Karate fee for July
    db_session.add(StudentFee(
        tenant_id=academy.tenant_id,
        student_id=academy.student_id,
        enrollment_id=academy.enrollment_id,
        month=7,
        year=2024,
        amount=Decimal('2000.00'),
        paid_amount=Decimal('0.00'),
        status=FeeStatusEnum.PENDING,
        due_date=date(2024, 7, 5)
    ))
    db_session.commit()

    # Hide it from the existence check so the insert trips the unique constraint
    real_query = db_session.query

    def query_without_existing_check(*entities, **kwargs):
        if len(entities) == 1 and entities[0] is StudentFee.id:
            return real_query(StudentFee.id).filter(StudentFee.id < 0)
        return real_query(*entities, **kwargs)

    monkeypatch.setattr(db_session, 'query', query_without_existing_check)
    created = ensure_monthly_fees(db_session, academy.tenant_id, academy.student_id, reference_date=reference)
    monkeypatch.undo()
    db_session.commit()

    assert [f.amount for f in created] == [Decimal('1500.00')]
    assert len(_fees_for(db_session, academy.student_id, 7, 2024)) == 2


def test_due_date_is_clamped_to_month_end():
    assert due_date_for_period(2, 2024, due_day=31) == date(2024, 2, 29)
    assert due_date_for_period(4, 2023, due_day=31) == date(2023, 4, 30)
    assert due_date_for_period(1, 2024, due_day=5) == date(2024, 1, 5)


def test_generate_for_whole_academy(db_session, academy):
    create_enrollment(db_session, academy.tenant_id, academy.other_student_id, academy.yoga_id)

    count = generate_monthly_fees_for_tenant(db_session, academy.tenant_id, date(2024, 8, 15))
    again = generate_monthly_fees_for_tenant(db_session, academy.tenant_id, date(2024, 8, 15))

    assert count == 3
    assert again == 0
    assert len(_fees_for(db_session, academy.student_id, 8, 2024)) == 1
    assert len(_fees_for(db_session, academy.other_student_id, 8, 2024)) == 2
    assert _fees_for(db_session, academy.inactive_student_id, 8, 2024) == []
