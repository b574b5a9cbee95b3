"""SQLite storage helpers shared by the registry, queue and ledger.

Every operation opens a short-lived connection; writers that must be
atomic across a read and an update use ``BEGIN IMMEDIATE`` so concurrent
workers serialize on the database write lock.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator, Optional, Type, Union

from .errors import StorageUnavailableError

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).parent / "schema.sql"
BUSY_TIMEOUT_SECONDS = 30.0

PathLike = Union[str, Path]


def to_ts(value: datetime) -> float:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def from_ts(value: Optional[float]) -> Optional[datetime]:
    if value is None:
        return None
    return datetime.fromtimestamp(value, timezone.utc)


def _open(db_path: PathLike, unavailable: Type[StorageUnavailableError]) -> sqlite3.Connection:
    try:
        conn = sqlite3.connect(str(db_path), timeout=BUSY_TIMEOUT_SECONDS, isolation_level=None)
    except sqlite3.Error as exc:
        raise unavailable(f"Cannot open database {db_path}: {exc}") from exc
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: PathLike, unavailable: Type[StorageUnavailableError] = StorageUnavailableError) -> None:
    """Create the database file and apply the schema (idempotent)."""
    path = Path(db_path)
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise unavailable(f"Cannot create database directory {path.parent}: {exc}") from exc

    conn = _open(path, unavailable)
    try:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.executescript(SCHEMA_PATH.read_text(encoding="utf-8"))
    except sqlite3.Error as exc:
        raise unavailable(f"Cannot initialize schema in {path}: {exc}") from exc
    finally:
        conn.close()
    logger.debug(f"Database schema ready at {path}")


@contextmanager
def transaction(
    db_path: PathLike,
    unavailable: Type[StorageUnavailableError] = StorageUnavailableError,
    immediate: bool = False,
) -> Iterator[sqlite3.Connection]:
    """Run a block inside one transaction and close the connection after.

    IntegrityError propagates unchanged so callers can react to constraint
    violations; any other sqlite error becomes ``unavailable``.
    """
    conn = _open(db_path, unavailable)
    try:
        conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
        yield conn
        conn.execute("COMMIT")
    except sqlite3.IntegrityError:
        _rollback(conn)
        raise
    except sqlite3.Error as exc:
        _rollback(conn)
        raise unavailable(f"Database operation failed on {db_path}: {exc}") from exc
    except BaseException:
        _rollback(conn)
        raise
    finally:
        conn.close()


def _rollback(conn: sqlite3.Connection) -> None:
    if conn.in_transaction:
        try:
            conn.execute("ROLLBACK")
        except sqlite3.Error:
            logger.exception("Rollback failed")
