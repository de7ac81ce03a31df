# main.py
"""
Single Database Multi-Tenant Academy Management System
Path-based routing with tenant scoping
"""

import os
import sys
import logging
from flask import Flask, request, g, jsonify
from flask_login import LoginManager

# Ensure project root is on sys.path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

# --- local modules ---
from config import config
from db_single import get_session, init_database, create_all_tables
from models import User, Tenant
from cli_commands import register_cli_commands


def create_app(config_name: str = None) -> Flask:
    """Create main application with single database multi-tenancy"""
    config_name = config_name or os.environ.get('APP_ENV', 'default')
    app_config = config[config_name]()

    app = Flask(__name__)
    app.config.from_object(app_config)
    app.config['SQLALCHEMY_DATABASE_URI'] = app_config.get_database_uri()

    # Logging
    logging.basicConfig(level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO))
    logger = logging.getLogger(__name__)

    # DB init
    init_database(app_config)
    if app.config.get('TESTING'):
        create_all_tables()
    else:
        from init_db import run_on_startup
        if not run_on_startup(app.config['SQLALCHEMY_DATABASE_URI']):
            logger.warning("Application will continue with existing database state.")

    # Flask-Login
    login_manager = LoginManager()
    login_manager.init_app(app)

    @login_manager.user_loader
    def load_user(user_id: str):
        try:
            t = user_id.split("_")
            if len(t) == 3 and t[0] == "school":
                s = get_session()
                try:
                    return s.query(User).filter_by(
                        id=int(t[2]), tenant_id=int(t[1]), is_active=True
                    ).first()
                finally:
                    s.close()
        except Exception as e:
            logging.getLogger(__name__).error(f"user_loader error: {e}")
        return None

    # CLI
    register_cli_commands(app)

    # Dynamic academy blueprint
    from school_routes_dynamic import create_school_blueprint
    app.register_blueprint(create_school_blueprint())
    logger.info("Academy blueprint registered")

    @app.before_request
    def tenant_scope():
        parts = request.path.strip("/").split("/")
        if not parts:
            return
        p = parts[0]

        # Skip tenant resolution for utility/system routes
        SKIP = {
            "static",
            "",
            "favicon.ico",
            "robots.txt",
            "_healthz",
        }
        if p in SKIP or p.startswith("_"):
            return

        s = get_session()
        try:
            tenant = s.query(Tenant).filter_by(slug=p, is_active=True).first()
            if tenant:
                g.current_tenant = tenant
            elif "." not in p:
                return jsonify({'success': False, 'error': f'Academy {p} not found or inactive'}), 404
        finally:
            s.close()

    @app.route("/_healthz")
    def healthz():
        return jsonify({'status': 'ok'})

    @app.errorhandler(404)
    def nf(_):
        return jsonify({'success': False, 'error': 'Not found'}), 404

    @app.errorhandler(500)
    def ie(_):
        return jsonify({'success': False, 'error': 'Internal error'}), 500

    return app


if __name__ == "__main__":
    create_app().run(debug=True, host="0.0.0.0", port=5000)
