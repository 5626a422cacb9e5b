from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, sessionmaker
from cohortflow.core.config import settings

engine = create_engine(settings.DATABASE_URL, future=True, pool_pre_ping=True, echo=settings.DATABASE_ECHO)
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)

class Base(DeclarativeBase): pass

def get_db():
    """Request-scoped session; uncommitted work is rolled back when the request fails."""
    db = SessionLocal()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()

def init_db(bind=None) -> None:
    """Create tables that do not exist yet. Deployments use migrations instead."""
    from cohortflow.models import orm  # noqa: F401  registers the mappers
    Base.metadata.create_all(bind=bind or engine)
