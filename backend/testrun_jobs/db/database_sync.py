from contextlib import contextmanager
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from testrun_jobs.db.models import Base

def create_session_factory(database_url: str, echo: bool = False, **engine_kwargs) -> sessionmaker:
    """Build the sync engine and session factory used by workers"""
    if not database_url.startswith("sqlite"):
        # Pool sized for one worker pool per queue
        engine_kwargs.setdefault("pool_size", 10)
        engine_kwargs.setdefault("max_overflow", 20)
        engine_kwargs.setdefault("pool_recycle", 3600)  # Recycle connections after 1 hour
    engine = create_engine(
        database_url,
        pool_pre_ping=True,
        echo=echo,
        **engine_kwargs,
    )
    return sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )

@contextmanager
def session_scope(session_factory: sessionmaker):
    """One transaction per job: commit on success, roll back on any error"""
    session: Session = session_factory()
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()

def init_db(session_factory: sessionmaker):
    """Create missing tables (development and tests; production runs migrations)"""
    Base.metadata.create_all(bind=session_factory.kw["bind"])
