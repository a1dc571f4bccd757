from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from tag_custody.config import settings


def make_engine(url: str | None = None, echo: bool | None = None) -> Engine:
    url = url or settings.DATABASE_URL
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = settings.SQLITE_BUSY_TIMEOUT
    return create_engine(
        url,
        connect_args=connect_args,
        echo=settings.DATABASE_ECHO if echo is None else echo,
    )


engine = make_engine()
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


class Base(DeclarativeBase):
    pass


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db: Session):
    """Run a block as one transaction: commit on success, roll back on any error."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise


def init_db(bind: Engine | None = None):
    # Import all models so Base.metadata knows about them
    import tag_custody.models.audit_log  # noqa: F401
    import tag_custody.models.inventory_unit  # noqa: F401
    import tag_custody.models.transfer  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
