"""
Database Helper Utilities for Concurrency Control

Provides:
- Database dialect detection (PostgreSQL vs SQLite)
- Single-row locking that always re-reads persisted state
- Worker-safe batch selection
"""

import logging
from typing import Optional, TypeVar, Type
from sqlalchemy.orm import Session

logger = logging.getLogger(__name__)

T = TypeVar('T')


def is_postgres(db: Session) -> bool:
    """Check if the database is PostgreSQL"""
    bind = db.get_bind()
    return bind is not None and bind.dialect.name == 'postgresql'


def acquire_row_lock(
    db: Session,
    model: Type[T],
    filter_condition,
    nowait: bool = False,
    refresh: bool = True
) -> Optional[T]:
    """
    Load a single row for a read-modify-write cycle.

    The row is always read from the database (``populate_existing``) so the
    caller validates against persisted state, never an in-memory snapshot.
    On PostgreSQL the row is also locked with SELECT ... FOR UPDATE until the
    surrounding transaction ends. SQLite has no row locks; callers rely on the
    model's version column instead.

    Example:
        booking = acquire_row_lock(db, Booking, Booking.id == booking_id)
    """
    query = db.query(model).filter(filter_condition)
    if refresh:
        query = query.populate_existing()

    if is_postgres(db):
        query = query.with_for_update(nowait=nowait)

    return query.first()


def get_pending_with_skip_locked(
    db: Session,
    model: Type[T],
    filter_condition,
    order_by=None,
    limit: int = 50
) -> list:
    """
    Get pending records with skip_locked so concurrent workers don't pick
    the same rows.
    """
    query = db.query(model).filter(filter_condition)

    if order_by is not None:
        query = query.order_by(order_by)

    if is_postgres(db):
        query = query.with_for_update(skip_locked=True)

    return query.limit(limit).all()
