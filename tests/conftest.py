"""
Shared fixtures: a fresh in-memory academy database per test
"""

import pytest
from datetime import date
from decimal import Decimal
from types import SimpleNamespace

from main import create_app
from db_single import get_session
from models import Tenant, User, Branch, Student, StudentStatusEnum
from fee_models import FeeStructure, Enrollment, StudentFee, EnrollmentStatusEnum
from fee_helpers import determine_fee_status

ACADEMY_SLUG = 'karate-central'
ADMIN_USERNAME = 'frontdesk'
ADMIN_PASSWORD = 'secret123'


@pytest.fixture
def app():
    app = create_app('testing')
    yield app


@pytest.fixture
def db_session(app):
    session = get_session()
    yield session
    session.close()


@pytest.fixture
def academy(app):
    """One academy with staff, two active students, one inactive student and a small catalog.

    Ravi and Kiran are each enrolled in Karate (2000/month); Yoga (1500/month)
    is in the catalog but nobody is enrolled yet.
    """
    session = get_session()
    try:
        tenant = Tenant(name='Karate Central Academy', slug=ACADEMY_SLUG, is_active=True)
        session.add(tenant)
        session.flush()

        admin = User(
            tenant_id=tenant.id,
            username=ADMIN_USERNAME,
            email='frontdesk@karatecentral.test',
            first_name='Front',
            last_name='Desk',
            role='school_admin',
            is_active=True
        )
        admin.set_password(ADMIN_PASSWORD)
        branch = Branch(tenant_id=tenant.id, name='Main Branch')
        session.add_all([admin, branch])
        session.flush()

        student = Student(tenant_id=tenant.id, branch_id=branch.id, name='Ravi Kumar', status=StudentStatusEnum.ACTIVE)
        other_student = Student(tenant_id=tenant.id, branch_id=branch.id, name='Kiran Shah', status=StudentStatusEnum.ACTIVE)
        inactive_student = Student(tenant_id=tenant.id, branch_id=branch.id, name='Meera Nair', status=StudentStatusEnum.INACTIVE)
        karate = FeeStructure(tenant_id=tenant.id, name='Karate', name_key='karate', amount=Decimal('2000.00'), is_active=True)
        yoga = FeeStructure(tenant_id=tenant.id, name='Yoga', name_key='yoga', amount=Decimal('1500.00'), is_active=True)
        session.add_all([student, other_student, inactive_student, karate, yoga])
        session.flush()

        enrollment = Enrollment(
            tenant_id=tenant.id,
            student_id=student.id,
            fee_structure_id=karate.id,
            start_date=date(2024, 1, 1),
            status=EnrollmentStatusEnum.ACTIVE
        )
        other_enrollment = Enrollment(
            tenant_id=tenant.id,
            student_id=other_student.id,
            fee_structure_id=karate.id,
            start_date=date(2024, 1, 1),
            status=EnrollmentStatusEnum.ACTIVE
        )
        session.add_all([enrollment, other_enrollment])
        session.commit()

        return SimpleNamespace(
            tenant_id=tenant.id,
            slug=tenant.slug,
            admin_id=admin.id,
            branch_id=branch.id,
            student_id=student.id,
            other_student_id=other_student.id,
            inactive_student_id=inactive_student.id,
            karate_id=karate.id,
            yoga_id=yoga.id,
            enrollment_id=enrollment.id,
            other_enrollment_id=other_enrollment.id,
        )
    finally:
        session.close()


@pytest.fixture
def make_fee(db_session, academy):
    """Insert a monthly fee row directly, bypassing the generator"""

    def _make_fee(month, year, amount, paid_amount='0.00', enrollment_id=None, student_id=None,
                  due_date=None, status=None):
        amount = Decimal(str(amount))
        paid_amount = Decimal(str(paid_amount))
        student_fee = StudentFee(
            tenant_id=academy.tenant_id,
            student_id=student_id or academy.student_id,
            enrollment_id=enrollment_id or academy.enrollment_id,
            month=month,
            year=year,
            amount=amount,
            paid_amount=paid_amount,
            status=status or determine_fee_status(amount, paid_amount),
            due_date=due_date or date(year, month, 5)
        )
        db_session.add(student_fee)
        db_session.commit()
        return student_fee

    return _make_fee


@pytest.fixture
def client(app, academy):
    """Test client logged in as the academy's front desk user"""
    client = app.test_client()
    response = client.post(f'/{academy.slug}/login', json={
        'username': ADMIN_USERNAME,
        'password': ADMIN_PASSWORD
    })
    assert response.status_code == 200, response.get_json()
    return client
