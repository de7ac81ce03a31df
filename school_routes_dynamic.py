"""
Dynamic Academy Routes for Single Database Multi-Tenant System
Handles all academy-specific routes with a single blueprint
"""

from flask import Blueprint, request, g, jsonify
from flask_login import login_user, logout_user, current_user
import logging

from db_single import get_session
from models import User, Tenant
from fee_routes import register_fee_routes

logger = logging.getLogger(__name__)

def create_school_blueprint():
    """Create a single blueprint that handles all academy tenants dynamically"""

    school_bp = Blueprint('school', __name__)

    def require_school_auth(f):
        """Decorator to require academy staff authentication"""
        def decorated_function(*args, **kwargs):
            if not hasattr(g, 'current_tenant'):
                return jsonify({'success': False, 'error': 'Academy not found'}), 404

            if not current_user.is_authenticated:
                return jsonify({'success': False, 'error': 'Authentication required'}), 401

            # Check if user belongs to current tenant
            if current_user.tenant_id != g.current_tenant.id:
                return jsonify({'success': False, 'error': 'Access denied - wrong academy'}), 403

            return f(*args, **kwargs)

        decorated_function.__name__ = f.__name__
        return decorated_function

    @school_bp.route('/<tenant_slug>/login', methods=['POST'])
    def login(tenant_slug):
        """Academy staff login (JSON body or form)"""
        data = request.get_json(silent=True) or request.form
        username = (data.get('username') or '').strip()
        password = (data.get('password') or '').strip()

        if not username or not password:
            return jsonify({'success': False, 'error': 'Please enter both username and password'}), 400

        session_db = get_session()
        try:
            school = session_db.query(Tenant).filter_by(slug=tenant_slug, is_active=True).first()
            if not school:
                return jsonify({'success': False, 'error': 'Academy not found or inactive'}), 404

            user = session_db.query(User).filter_by(
                username=username,
                tenant_id=school.id,
                is_active=True
            ).first()

            if user and user.check_password(password):
                login_user(user, remember=True)
                logger.info(f"User {username} logged in to {tenant_slug}")
                return jsonify({'success': True, 'user': {
                    'id': user.id,
                    'username': user.username,
                    'role': user.role,
                    'name': user.full_name
                }})

            return jsonify({'success': False, 'error': 'Invalid username or password'}), 401

        except Exception as e:
            logger.error(f"Academy login error for {tenant_slug}: {e}")
            return jsonify({'success': False, 'error': 'Login error occurred'}), 500
        finally:
            session_db.close()

    @school_bp.route('/<tenant_slug>/logout')
    def logout(tenant_slug):
        """Logout academy user"""
        logout_user()
        return jsonify({'success': True})

    register_fee_routes(school_bp, require_school_auth)

    return school_bp
