"""
Configuration for the Multi-Tenant Academy Fee Ledger
"""

import os
from urllib.parse import quote_plus
import dotenv
from sqlalchemy.pool import StaticPool
dotenv.load_dotenv()  # Load environment variables from .env file

class Config:
    """Base configuration for single database multi-tenancy"""

    # Flask settings
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'supersecretkey'
    TESTING = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Database settings (prefer local .env)
    DATABASE_URL = os.environ.get('DATABASE_URL')
    MYSQL_HOST = os.environ.get('DB_HOST', 'localhost')
    MYSQL_PORT = int(os.environ.get('DB_PORT', 3306))
    MYSQL_USERNAME = os.environ.get('DB_USER', 'academy')
    # NOTE: do NOT override an explicitly empty password from .env
    MYSQL_PASSWORD = os.environ.get('DB_PASS', '')
    MYSQL_DATABASE = os.environ.get('DB_NAME', 'academy_fees')
    MYSQL_CHARSET = 'utf8mb4'

    # SQLAlchemy settings
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_recycle': 280,
        'pool_pre_ping': True,
    }

    # Fee ledger settings
    FEE_DUE_DAY = int(os.environ.get('FEE_DUE_DAY', 5))
    # 'credit' banks overpayments against future invoices, 'reject' refuses them
    OVERPAYMENT_POLICY = os.environ.get('OVERPAYMENT_POLICY', 'credit')
    # Stand-in payment gateway: 'approve', 'decline' or 'random'
    PAYMENT_GATEWAY_MODE = os.environ.get('PAYMENT_GATEWAY_MODE', 'approve')
    CURRENCY_SYMBOL = os.environ.get('CURRENCY_SYMBOL', 'Rs.')

    def _encoded_password(self) -> str:
        """Percent-encode special characters for URL usage."""
        return quote_plus(self.MYSQL_PASSWORD) if self.MYSQL_PASSWORD else ''

    def get_database_uri(self) -> str:
        """Get single database URI for all tenants."""
        if self.DATABASE_URL:
            return self.DATABASE_URL

        user = self.MYSQL_USERNAME
        pwd = self._encoded_password()
        host = self.MYSQL_HOST
        port = self.MYSQL_PORT
        database = self.MYSQL_DATABASE

        if pwd:
            return f"mysql+pymysql://{user}:{pwd}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"
        return f"mysql+pymysql://{user}@{host}:{port}/{database}?charset={self.MYSQL_CHARSET}"


class DevelopmentConfig(Config):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class ProductionConfig(Config):
    DEBUG = False


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing'
    OVERPAYMENT_POLICY = 'credit'
    PAYMENT_GATEWAY_MODE = 'approve'
    # One shared in-memory SQLite connection for the whole test run
    SQLALCHEMY_ENGINE_OPTIONS = {
        'connect_args': {'check_same_thread': False},
        'poolclass': StaticPool,
    }

    def get_database_uri(self) -> str:
        return 'sqlite:///:memory:'


config = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
    'default': DevelopmentConfig
}
