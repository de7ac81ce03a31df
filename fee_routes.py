"""
Fee Ledger Routes for the Academy Portal
JSON endpoints for the fee calculation view, fee collection, the fee structure
catalog, enrollments, payment history and printable receipts
"""

from flask import request, jsonify, g, send_file, current_app
from flask_login import current_user
from sqlalchemy.exc import SQLAlchemyError
import io
import logging
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from db_single import get_session
from fee_helpers import (
    FeeLedgerError, FeeValidationError, FeeNotFoundError, PaymentDeclinedError,
    calculate_student_fees, collect_fee_payment, process_online_payment,
    list_fee_structures, create_fee_structure, update_fee_structure_amount,
    create_enrollment, deactivate_enrollment, get_student_fee_details, get_payment
)

logger = logging.getLogger(__name__)


def _fee_error_response(session, error, action):
    """Map ledger exceptions onto JSON error responses"""
    session.rollback()
    if isinstance(error, FeeValidationError):
        return jsonify({'success': False, 'error': str(error)}), 400
    if isinstance(error, FeeNotFoundError):
        return jsonify({'success': False, 'error': str(error)}), 404
    if isinstance(error, PaymentDeclinedError):
        return jsonify({'success': False, 'error': str(error)}), 402
    logger.error(f"Failed to {action}: {error}")
    return jsonify({'success': False, 'error': f'Failed to {action}'}), 500


def _int_field(data, key):
    value = data.get(key)
    if value is None or value == '':
        raise FeeValidationError(f"{key} is required")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise FeeValidationError(f"Invalid {key}: {value}")


def create_fee_routes(school_blueprint, require_school_auth):
    """Add fee ledger routes to academy blueprint"""

    # ===== FEE CALCULATION & COLLECTION =====

    @school_blueprint.route('/<tenant_slug>/api/students/<int:student_id>/fee-calculation')
    @require_school_auth
    def api_fee_calculation(tenant_slug, student_id):
        """Dues summary used to pre-fill the collect fee form"""
        session = get_session()
        try:
            return jsonify(calculate_student_fees(session, g.current_tenant.id, student_id))
        except (FeeValidationError, FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'calculate fees')
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/fees/collect', methods=['POST'])
    @require_school_auth
    def api_collect_fee(tenant_slug):
        """Record a payment and distribute it over outstanding fees, oldest first"""
        data = request.get_json(silent=True) or {}
        session = get_session()
        try:
            result = collect_fee_payment(
                session,
                g.current_tenant.id,
                _int_field(data, 'studentId'),
                data.get('amount'),
                data.get('paymentMethod'),
                notes=data.get('notes'),
                payment_reference=data.get('paymentReference'),
                collected_by=current_user.id,
                payment_date=data.get('paymentDate')
            )
            return jsonify({'success': True, **result}), 201
        except (FeeLedgerError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'collect fee')
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/fees/pay-online', methods=['POST'])
    @require_school_auth
    def api_pay_online(tenant_slug):
        """Charge the payment gateway, then collect the fee"""
        data = request.get_json(silent=True) or {}
        session = get_session()
        try:
            result = process_online_payment(
                session,
                g.current_tenant.id,
                _int_field(data, 'studentId'),
                data.get('amount'),
                collected_by=current_user.id,
                notes=data.get('notes')
            )
            return jsonify({'success': True, **result}), 201
        except (FeeLedgerError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'process online payment')
        finally:
            session.close()


    # ===== FEE STRUCTURE CATALOG =====

    @school_blueprint.route('/<tenant_slug>/api/fee-structures')
    @require_school_auth
    def api_fee_structures(tenant_slug):
        """List fee structures"""
        include_inactive = request.args.get('include_inactive', '').lower() in ('1', 'true', 'yes')
        session = get_session()
        try:
            structures = list_fee_structures(session, g.current_tenant.id, include_inactive)
            return jsonify([s.to_dict() for s in structures])
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/fee-structures', methods=['POST'])
    @require_school_auth
    def api_add_fee_structure(tenant_slug):
        """Add new fee structure"""
        data = request.get_json(silent=True) or {}
        session = get_session()
        try:
            fee_structure = create_fee_structure(
                session,
                g.current_tenant.id,
                data.get('name'),
                data.get('amount'),
                description=data.get('description'),
                created_by=current_user.id
            )
            return jsonify({'success': True, 'feeStructure': fee_structure.to_dict()}), 201
        except (FeeValidationError, FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'create fee structure')
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/fee-structures/<int:structure_id>', methods=['PUT'])
    @require_school_auth
    def api_update_fee_structure(tenant_slug, structure_id):
        """Amend a fee structure's amount (applies to future monthly fees only)"""
        data = request.get_json(silent=True) or {}
        session = get_session()
        try:
            fee_structure = update_fee_structure_amount(session, g.current_tenant.id, structure_id, data.get('amount'))
            return jsonify({'success': True, 'feeStructure': fee_structure.to_dict()})
        except (FeeValidationError, FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'update fee structure')
        finally:
            session.close()


    # ===== ENROLLMENTS =====

    @school_blueprint.route('/<tenant_slug>/api/enrollments', methods=['POST'])
    @require_school_auth
    def api_add_enrollment(tenant_slug):
        """Enroll a student in a program"""
        data = request.get_json(silent=True) or {}
        session = get_session()
        try:
            enrollment = create_enrollment(
                session,
                g.current_tenant.id,
                _int_field(data, 'studentId'),
                _int_field(data, 'feeStructureId'),
                start_date=data.get('startDate'),
                created_by=current_user.id
            )
            return jsonify({'success': True, 'enrollment': enrollment.to_dict()}), 201
        except (FeeValidationError, FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'create enrollment')
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/enrollments/<int:enrollment_id>/deactivate', methods=['POST'])
    @require_school_auth
    def api_deactivate_enrollment(tenant_slug, enrollment_id):
        """Student dropped the program"""
        session = get_session()
        try:
            enrollment = deactivate_enrollment(session, g.current_tenant.id, enrollment_id)
            return jsonify({'success': True, 'enrollment': enrollment.to_dict()})
        except (FeeValidationError, FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'deactivate enrollment')
        finally:
            session.close()


    # ===== FEE HISTORY & RECEIPTS =====

    @school_blueprint.route('/<tenant_slug>/api/students/<int:student_id>/fees')
    @require_school_auth
    def api_student_fees(tenant_slug, student_id):
        """Monthly fees and payments of a student"""
        session = get_session()
        try:
            return jsonify(get_student_fee_details(session, g.current_tenant.id, student_id))
        except (FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'load student fees')
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/payments/<int:payment_id>')
    @require_school_auth
    def api_payment(tenant_slug, payment_id):
        """Payment with the fees it was allocated to"""
        session = get_session()
        try:
            return jsonify(get_payment(session, g.current_tenant.id, payment_id).to_dict())
        except (FeeNotFoundError, SQLAlchemyError) as e:
            return _fee_error_response(session, e, 'load payment')
        finally:
            session.close()


    @school_blueprint.route('/<tenant_slug>/api/payments/<int:payment_id>/receipt.pdf')
    @require_school_auth
    def print_receipt(tenant_slug, payment_id):
        """Print receipt PDF"""
        session = get_session()
        try:
            payment = get_payment(session, g.current_tenant.id, payment_id)
        except FeeNotFoundError as e:
            session.close()
            return jsonify({'success': False, 'error': str(e)}), 404

        try:
            currency = current_app.config.get('CURRENCY_SYMBOL', 'Rs.')

            buffer = io.BytesIO()
            p = canvas.Canvas(buffer, pagesize=A4)
            width, height = A4

            # Header
            p.setFont("Helvetica-Bold", 20)
            p.drawCentredString(width/2, height - 50, g.current_tenant.name)
            p.setFont("Helvetica", 12)
            p.drawCentredString(width/2, height - 70, "Fee Receipt")

            y = height - 120
            p.setFont("Helvetica-Bold", 12)
            p.drawString(50, y, f"Receipt No: {payment.receipt_number}")
            p.drawRightString(width - 50, y, f"Date: {payment.payment_date.strftime('%d-%b-%Y')}")

            y -= 30
            p.setFont("Helvetica", 11)
            p.drawString(50, y, f"Student Name: {payment.student.name}")
            p.drawString(300, y, f"Student ID: {payment.student_id}")

            y -= 40
            p.setFont("Helvetica-Bold", 11)
            p.drawString(50, y, "Payment Details:")
            y -= 25
            p.setFont("Helvetica", 11)

            details = [
                ("Amount Paid:", f"{currency} {payment.amount:,.2f}"),
                ("Payment Mode:", payment.payment_method.value.replace('_', ' ').title()),
            ]
            if payment.payment_reference:
                details.append(("Reference No:", payment.payment_reference))

            for label, value in details:
                p.drawString(70, y, label)
                p.drawString(250, y, str(value))
                y -= 20

            # Allocation breakdown
            y -= 20
            p.setFont("Helvetica-Bold", 11)
            p.drawString(50, y, "Applied To:")
            y -= 25
            p.setFont("Helvetica", 11)
            for allocation in payment.allocations:
                student_fee = allocation.student_fee
                p.drawString(70, y, f"{student_fee.month:02d}/{student_fee.year}")
                p.drawString(250, y, f"{currency} {allocation.amount:,.2f}")
                y -= 20

            unallocated = payment.amount - payment.allocated_amount
            if unallocated > 0:
                p.drawString(70, y, "Credit carried forward:")
                p.drawString(250, y, f"{currency} {unallocated:,.2f}")

            # Footer
            p.drawString(50, 100, f"Collected by: {payment.collector.username if payment.collector else 'System'}")
            p.drawCentredString(width/2, 50, "This is a computer-generated receipt")

            p.showPage()
            p.save()

            buffer.seek(0)
            return send_file(buffer, as_attachment=True, download_name=f"receipt_{payment.receipt_number}.pdf", mimetype='application/pdf')
        finally:
            session.close()


# Export function to be called from main blueprint
def register_fee_routes(school_blueprint, require_school_auth):
    """Register all fee ledger routes with academy blueprint"""
    create_fee_routes(school_blueprint, require_school_auth)
