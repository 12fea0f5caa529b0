from collections.abc import Generator

from sqlalchemy.orm import Session

from .session import SessionLocalLending


def get_lending_db() -> Generator[Session, None, None]:
    """One session per request; anything left uncommitted by a failed request is rolled back."""
    db = SessionLocalLending()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
