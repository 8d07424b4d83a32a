from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker

Base = declarative_base()
engine = None
SessionLocal = None


def init_db(database_url: str, **engine_kwargs):
    global engine, SessionLocal
    if engine is None:
        if database_url.startswith("sqlite"):
            engine_kwargs.setdefault("connect_args", {"check_same_thread": False})
        engine = create_engine(database_url, **engine_kwargs)
        SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
        # create tables
        from enrollment_service import models  # noqa: F401
        Base.metadata.create_all(bind=engine)


@contextmanager
def atomic(db: Session):
    """
    Scoped atomic write: everything done on ``db`` inside the block commits
    together, or is rolled back and the original exception re-raised.
    """
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
