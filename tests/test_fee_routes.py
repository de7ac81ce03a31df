import pytest
from datetime import date
from sqlalchemy.exc import IntegrityError

from db_single import get_session
from models import Tenant, User
from fee_models import Payment, StudentFee, FeeStatusEnum
from conftest import ADMIN_USERNAME, ADMIN_PASSWORD


def _payment_count():
    session = get_session()
    try:
        return session.query(Payment).count()
    finally:
        session.close()


def test_login_requires_valid_credentials(app, academy):
    client = app.test_client()

    assert client.post(f'/{academy.slug}/login', json={'username': ADMIN_USERNAME, 'password': 'wrong'}).status_code == 401
    assert client.post(f'/{academy.slug}/login', json={'username': '', 'password': ''}).status_code == 400

    response = client.post(f'/{academy.slug}/login', data={'username': ADMIN_USERNAME, 'password': ADMIN_PASSWORD})
    assert response.status_code == 200
    assert response.get_json()['user']['role'] == 'school_admin'


def test_api_requires_login(app, academy):
    client = app.test_client()

    response = client.get(f'/{academy.slug}/api/fee-structures')

    assert response.status_code == 401
    assert response.get_json()['success'] is False


def test_unknown_academy(client):
    response = client.get('/no-such-academy/api/fee-structures')
    assert response.status_code == 404


def test_staff_of_another_academy_is_refused(app, academy):
    session = get_session()
    try:
        other = Tenant(name='Yoga House', slug='yoga-house', is_active=True)
        session.add(other)
        session.flush()
        user = User(tenant_id=other.id, username='owner', email='owner@yogahouse.test', role='school_admin')
        user.set_password('pass1234')
        session.add(user)
        session.commit()
    finally:
        session.close()

    client = app.test_client()
    assert client.post('/yoga-house/login', json={'username': 'owner', 'password': 'pass1234'}).status_code == 200

    response = client.get(f'/{academy.slug}/api/fee-structures')
    assert response.status_code == 403


def test_fee_calculation_endpoint(client, academy):
    response = client.get(f'/{academy.slug}/api/students/{academy.student_id}/fee-calculation')

    assert response.status_code == 200
    data = response.get_json()
    assert data['studentId'] == academy.student_id
    assert data['monthlyFee'] == 2000.0
    assert data['pendingAmount'] == 2000.0
    assert data['suggestedAmount'] == 2000.0
    assert data['perCharge'][0]['name'] == 'Karate'

    assert client.get(f'/{academy.slug}/api/students/999999/fee-calculation').status_code == 404


def test_collect_fee(client, academy):
    response = client.post(f'/{academy.slug}/api/fees/collect', json={
        'studentId': academy.student_id,
        'amount': '2500',
        'paymentMethod': 'cash',
        'notes': 'Paid at front desk'
    })

    assert response.status_code == 201
    data = response.get_json()
    assert data['success'] is True
    assert data['receiptNumber'].startswith(f"RCP-{date.today():%Y%m}-")
    assert data['amountApplied'] == 2000.0
    assert data['remainder'] == 500.0

    session = get_session()
    try:
        payment = session.get(Payment, data['paymentId'])
        assert payment.collected_by == academy.admin_id
        assert payment.notes == 'Paid at front desk'
        fee = session.query(StudentFee).filter_by(student_id=academy.student_id).one()
        assert fee.status == FeeStatusEnum.PAID
    finally:
        session.close()

    calculation = client.get(f'/{academy.slug}/api/students/{academy.student_id}/fee-calculation').get_json()
    assert calculation['creditBalance'] == 500.0


def test_collect_fee_validation(client, academy):
    url = f'/{academy.slug}/api/fees/collect'

    assert client.post(url, json={'studentId': academy.student_id, 'amount': 0, 'paymentMethod': 'cash'}).status_code == 400
    assert client.post(url, json={'studentId': academy.student_id, 'amount': '1e30', 'paymentMethod': 'cash'}).status_code == 400
    assert client.post(url, json={'studentId': academy.student_id, 'amount': 123456789, 'paymentMethod': 'cash'}).status_code == 400
    assert client.post(url, json={'studentId': academy.student_id, 'amount': 100}).status_code == 400
    assert client.post(url, json={'amount': 100, 'paymentMethod': 'cash'}).status_code == 400
    assert client.post(url, json={'studentId': 'abc', 'amount': 100, 'paymentMethod': 'cash'}).status_code == 400
    response = client.post(url, json={'studentId': academy.inactive_student_id, 'amount': 100, 'paymentMethod': 'cash'})
    assert response.status_code == 400
    assert 'not active' in response.get_json()['error']

    assert _payment_count() == 0


def test_pay_online(app, client, academy):
    url = f'/{academy.slug}/api/fees/pay-online'

    app.config['PAYMENT_GATEWAY_MODE'] = 'decline'
    response = client.post(url, json={'studentId': academy.student_id, 'amount': 2000})
    assert response.status_code == 402
    assert _payment_count() == 0

    app.config['PAYMENT_GATEWAY_MODE'] = 'approve'
    response = client.post(url, json={'studentId': academy.student_id, 'amount': 2000})
    assert response.status_code == 201

    payment = client.get(f"/{academy.slug}/api/payments/{response.get_json()['paymentId']}").get_json()
    assert payment['payment_method'] == 'online'
    assert payment['payment_reference'].startswith('SIM-')


def test_fee_structure_endpoints(client, academy):
    url = f'/{academy.slug}/api/fee-structures'

    response = client.post(url, json={'name': 'Bharatnatyam', 'amount': 1500})
    assert response.status_code == 201
    created = response.get_json()['feeStructure']
    assert created['amount'] == 1500.0

    assert client.post(url, json={'name': 'bharatnatyam', 'amount': 1600}).status_code == 400
    assert client.post(url, json={'name': 'Kathak', 'amount': -1}).status_code == 400

    names = [s['name'] for s in client.get(url).get_json()]
    assert names == ['Bharatnatyam', 'Karate', 'Yoga']

    response = client.put(f"{url}/{created['id']}", json={'amount': '1650'})
    assert response.status_code == 200
    assert response.get_json()['feeStructure']['amount'] == 1650.0

    assert client.put(f'{url}/9999', json={'amount': '1650'}).status_code == 404


def test_enrollment_endpoints(client, academy):
    url = f'/{academy.slug}/api/enrollments'

    response = client.post(url, json={'studentId': academy.student_id, 'feeStructureId': academy.yoga_id, 'startDate': '2024-06-01'})
    assert response.status_code == 201
    enrollment = response.get_json()['enrollment']
    assert enrollment['fee_structure'] == 'Yoga'
    assert enrollment['start_date'] == '2024-06-01'

    assert client.post(url, json={'studentId': academy.student_id, 'feeStructureId': academy.yoga_id}).status_code == 400
    assert client.post(url, json={'studentId': academy.student_id, 'feeStructureId': 9999}).status_code == 404

    response = client.post(f"{url}/{enrollment['id']}/deactivate")
    assert response.status_code == 200
    assert response.get_json()['enrollment']['status'] == 'inactive'


def test_student_fee_history_and_receipt(client, academy):
    collected = client.post(f'/{academy.slug}/api/fees/collect', json={
        'studentId': academy.student_id,
        'amount': 1200,
        'paymentMethod': 'UPI',
        'paymentReference': 'UPI-778812'
    }).get_json()

    history = client.get(f'/{academy.slug}/api/students/{academy.student_id}/fees').get_json()
    assert history['student']['name'] == 'Ravi Kumar'
    assert history['fees'][0]['status'] == 'partial'
    assert history['fees'][0]['paid_amount'] == 1200.0
    assert history['payments'][0]['receipt_number'] == collected['receiptNumber']

    payment = client.get(f"/{academy.slug}/api/payments/{collected['paymentId']}").get_json()
    assert payment['amount'] == 1200.0
    assert [a['amount'] for a in payment['allocations']] == [1200.0]

    response = client.get(f"/{academy.slug}/api/payments/{collected['paymentId']}/receipt.pdf")
    assert response.status_code == 200
    assert response.mimetype == 'application/pdf'
    assert response.data.startswith(b'%PDF')

    assert client.get(f'/{academy.slug}/api/payments/9999').status_code == 404
    assert client.get(f'/{academy.slug}/api/payments/9999/receipt.pdf').status_code == 404


def test_session_ids_must_name_an_academy_user(app, academy):
    session = get_session()
    try:
        admin = session.get(User, academy.admin_id)
        assert admin.get_id() == f'school_{academy.tenant_id}_{academy.admin_id}'
    finally:
        session.close()

    load_user = app.login_manager._user_callback
    with app.app_context():
        assert load_user(f'school_{academy.tenant_id}_{academy.admin_id}').username == ADMIN_USERNAME
        assert load_user(f'admin_{academy.admin_id}') is None
        assert load_user(f'school_999_{academy.admin_id}') is None


def test_user_requires_an_academy(app):
    session = get_session()
    try:
        user = User(username='nobody', email='nobody@example.test', role='school_admin')
        user.set_password('pass1234')
        session.add(user)
        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()
    finally:
        session.close()


def test_healthz(app):
    response = app.test_client().get('/_healthz')
    assert response.status_code == 200
    assert response.get_json() == {'status': 'ok'}
