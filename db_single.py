"""
Database management for single database multi-tenant system
"""

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from config import Config
from models import Base, Tenant, Student, StudentStatusEnum
import logging

logger = logging.getLogger(__name__)

# Global engine and session factory
ENGINE = None
SessionLocal = None

def init_database(config=None):
    """Initialize database engine and session factory"""
    global ENGINE, SessionLocal

    config = config or Config()
    database_uri = config.get_database_uri()

    if ENGINE is not None:
        ENGINE.dispose()

    ENGINE = create_engine(
        database_uri,
        **config.SQLALCHEMY_ENGINE_OPTIONS
    )

    if ENGINE.dialect.name == 'sqlite':
        _enable_sqlite_savepoints(ENGINE)

    SessionLocal = sessionmaker(bind=ENGINE, autoflush=False, autocommit=False)

    logger.info(f"Database initialized: {ENGINE.url.render_as_string(hide_password=True)}")
    return ENGINE, SessionLocal

def _enable_sqlite_savepoints(engine):
    """Let SQLAlchemy emit BEGIN itself so SAVEPOINT/ROLLBACK TO work on pysqlite"""

    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")

def create_all_tables():
    """Create every mapped table on the current engine"""
    if ENGINE is None:
        init_database()
    # Importing registers the fee tables with Base.metadata
    import fee_models  # noqa: F401
    Base.metadata.create_all(ENGINE)

def get_session():
    """Get a database session"""
    if SessionLocal is None:
        init_database()
    return SessionLocal()

def create_academy(slug: str, name: str) -> tuple[bool, str]:
    """
    Create a new academy (tenant)

    Args:
        slug: URL-friendly identifier (e.g., 'karate-central')
        name: Full academy name (e.g., 'Karate Central Academy')

    Returns:
        tuple: (success: bool, message: str)
    """
    session = get_session()
    try:
        existing = session.query(Tenant).filter_by(slug=slug).first()
        if existing:
            return False, f"Academy with slug '{slug}' already exists"

        academy = Tenant(
            slug=slug,
            name=name,
            is_active=True
        )

        session.add(academy)
        session.commit()

        logger.info(f"Created academy: {name} ({slug})")
        return True, f"Academy '{name}' created successfully with slug '{slug}'"

    except Exception as e:
        session.rollback()
        logger.error(f"Failed to create academy: {e}")
        return False, f"Error creating academy: {str(e)}"
    finally:
        session.close()

def list_academies() -> list:
    """List all active academies"""
    session = get_session()
    try:
        return session.query(Tenant).filter_by(is_active=True).order_by(Tenant.name).all()
    finally:
        session.close()

def get_active_student(session, tenant_id: int, student_id: int, lock: bool = False):
    """
    Student directory lookup used by the fee ledger.

    Returns the Student when it exists in this academy with an active status,
    otherwise None. With lock=True the row is read FOR UPDATE so that ledger
    writes for one student are serialized.
    """
    query = session.query(Student).filter_by(
        id=student_id,
        tenant_id=tenant_id,
        status=StudentStatusEnum.ACTIVE
    )
    if lock:
        query = query.with_for_update()
    return query.first()
