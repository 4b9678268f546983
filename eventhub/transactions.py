import logging
from contextlib import contextmanager

from sqlalchemy.exc import SQLAlchemyError

from shared.errors import ServiceError, InternalError
from .models import db

logger = logging.getLogger(__name__)


@contextmanager
def atomic(operation: str, **context):
    """
    Run one service operation as a single unit of work.

    Commits when the block finishes; rolls back on any failure so that a
    rejected operation leaves every row as it was. Storage errors are logged
    with the operation context and surfaced as InternalError.
    """
    try:
        yield db.session
        db.session.commit()
    except ServiceError as e:
        db.session.rollback()
        logger.info(f"{operation} rejected ({e.kind}): {e.message} {context}")
        raise
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.exception(f"Storage failure during {operation} {context}")
        raise InternalError() from e
    except Exception:
        db.session.rollback()
        raise
