# Overview: Transaction helpers shared by every writing service.

from __future__ import annotations

import time

from flask import current_app
from sqlalchemy import text
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm.exc import StaleDataError

from ..extensions import db


def lock_for_update(query):
    """
    Apply row-level locking for critical operations.

    NOTE: SQLite ignores SELECT ... FOR UPDATE; begin_write_transaction()
    covers it there by taking the database write lock up front.
    """
    return query.with_for_update()


def begin_write_transaction() -> None:
    """
    Open the unit of work with the write lock held (SQLite only).

    BEGIN IMMEDIATE makes concurrent writers queue on the database lock, so an
    availability re-check always sees every booking committed before it.
    No-op when the connection is already inside a transaction.
    """
    if db.engine.dialect.name != "sqlite":
        return
    raw = db.session.connection().connection.dbapi_connection
    if not raw.in_transaction:
        db.session.execute(text("BEGIN IMMEDIATE"))


def run_with_retry(func, *, attempts: int | None = None, backoff_base: float = 0.1):
    """
    Execute a DB unit of work with retry on concurrency-related failures.

    Retries on OperationalError (deadlocks, locks) and StaleDataError
    (optimistic locking conflicts). Any other exception rolls the session back
    and propagates unchanged, so a failed operation leaves no partial rows.
    """
    if attempts is None:
        attempts = current_app.config.get("TRANSACTION_RETRY_ATTEMPTS", 3)

    last_exc = None
    for attempt in range(attempts):
        try:
            return func()
        except (OperationalError, StaleDataError) as exc:
            db.session.rollback()
            last_exc = exc
            if attempt >= attempts - 1:
                raise
            time.sleep(backoff_base * (2 ** attempt))
        except Exception:
            db.session.rollback()
            raise
    if last_exc:
        raise last_exc
