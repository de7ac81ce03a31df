"""
Database initialization for the fee ledger
Runs on startup: makes sure the database exists, creates missing tables and
checks that the ledger's uniqueness guards are present in the live schema
"""

import sys
import logging
from sqlalchemy import create_engine, inspect, text
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.schema import sort_tables
from dotenv import load_dotenv

load_dotenv()

from models import Base
import fee_models  # noqa: F401  (registers the ledger tables on Base.metadata)

logger = logging.getLogger(__name__)

# Uniqueness the ledger depends on when two requests race
REQUIRED_UNIQUE_KEYS = {
    'student_fees': ('enrollment_id', 'month', 'year'),
    'payments': ('tenant_id', 'receipt_number'),
    'fee_structures': ('tenant_id', 'name_key'),
}


def get_database_url():
    from config import Config
    return Config().get_database_uri()


def ensure_database_exists(url):
    """MySQL only: create the schema named in the URL if the server lacks it"""
    if url.get_backend_name() != 'mysql':
        return

    server_engine = create_engine(url.set(database=None))
    try:
        with server_engine.connect() as conn:
            conn.execution_options(isolation_level="AUTOCOMMIT")
            conn.execute(text(f'CREATE DATABASE IF NOT EXISTS `{url.database}`'))
    except SQLAlchemyError as e:
        logger.warning(f"Could not create database {url.database}: {e}")
    finally:
        server_engine.dispose()


def create_missing_tables(engine) -> list:
    """Create mapped tables the database does not have yet, parents before children"""
    present = set(inspect(engine).get_table_names())
    missing = [table for name, table in Base.metadata.tables.items() if name not in present]

    created = []
    for table in sort_tables(missing):
        try:
            table.create(engine, checkfirst=True)
        except SQLAlchemyError as e:
            logger.error(f"Could not create table {table.name}: {e}")
            continue
        created.append(table.name)
        logger.info(f"Created table {table.name}")

    return created


def missing_unique_keys(engine) -> list:
    """Required unique keys absent from the live schema, as 'table(col, ...)'"""
    inspector = inspect(engine)
    tables = set(inspector.get_table_names())

    missing = []
    for table, columns in REQUIRED_UNIQUE_KEYS.items():
        found = set()
        if table in tables:
            found = {tuple(c['column_names']) for c in inspector.get_unique_constraints(table)}
            found |= {tuple(i['column_names']) for i in inspector.get_indexes(table) if i.get('unique')}
        if columns not in found:
            missing.append(f"{table}({', '.join(columns)})")
    return missing


def initialize_database(db_url=None) -> tuple:
    """Returns (ok, names of the tables created)"""
    url = make_url(db_url or get_database_url())
    logger.info(f"Checking database {url.render_as_string(hide_password=True)}")

    ensure_database_exists(url)

    engine = create_engine(url)
    try:
        created = create_missing_tables(engine)
        for key in missing_unique_keys(engine):
            logger.warning(f"Unique key {key} is missing; duplicate fees or receipts are possible")
    except SQLAlchemyError as e:
        logger.error(f"Database initialization failed: {e}")
        return False, []
    finally:
        engine.dispose()

    if created:
        logger.info(f"Database initialization completed - created {len(created)} tables")
    else:
        logger.info("Database integrity verified - all tables present")
    return True, created


def run_on_startup(db_url=None) -> bool:
    success, _ = initialize_database(db_url)
    if not success:
        logger.warning("Database initialization failed; check the database configuration")
    return success


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    sys.exit(0 if run_on_startup() else 1)
