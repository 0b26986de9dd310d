from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Sequence, TypeVar

import psycopg2
from psycopg2.extras import RealDictCursor

from common.campaigns.models import SourceDescriptor
from common.errors import SourceUnavailable

from .config import SourceDbSettings, get_source_db_settings


logger = logging.getLogger(__name__)

T = TypeVar("T")


def connect(descriptor: SourceDescriptor, *, settings: SourceDbSettings | None = None):
    settings = settings or get_source_db_settings()
    try:
        return psycopg2.connect(
            host=descriptor.host,
            port=descriptor.port,
            dbname=descriptor.database,
            user=descriptor.user,
            password=descriptor.password,
            sslmode=descriptor.sslmode or settings.default_sslmode,
            connect_timeout=settings.connect_timeout_seconds,
            options=f"-c statement_timeout={settings.statement_timeout_ms}",
            application_name="campaign-accrual-extractor",
        )
    except psycopg2.Error as exc:
        logger.error(
            "Source database connection failed host=%s database=%s: %s",
            descriptor.host,
            descriptor.database,
            exc,
        )
        raise SourceUnavailable(
            f"Cannot connect to source database {descriptor.host}:{descriptor.port}/{descriptor.database}",
            detail=str(exc).strip(),
        ) from exc


def close(connection) -> None:
    try:
        connection.close()
    except psycopg2.Error as exc:
        logger.warning("Ignoring error while closing source connection: %s", exc)


@contextmanager
def source_connection(
    descriptor: SourceDescriptor,
    *,
    settings: SourceDbSettings | None = None,
) -> Iterator[Any]:
    """Open a read-only connection and close it on every exit path."""
    conn = connect(descriptor, settings=settings)
    try:
        try:
            conn.set_session(readonly=True, autocommit=True)
        except psycopg2.Error as exc:
            raise SourceUnavailable("Cannot configure source session", detail=str(exc).strip()) from exc
        yield conn
    finally:
        close(conn)


def with_connection(descriptor: SourceDescriptor, fn: Callable[[Any], T]) -> T:
    with source_connection(descriptor) as conn:
        return fn(conn)


def query(connection, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
    try:
        with connection.cursor(cursor_factory=RealDictCursor) as cur:
            cur.execute(sql, list(params) if params else None)
            rows = cur.fetchall()
    except psycopg2.Error as exc:
        raise SourceUnavailable("Source query failed", detail=str(exc).strip()) from exc
    return [dict(row) for row in rows]


class PsycopgSourceConnector:
    """SourceConnector backed by a PostgreSQL customer database."""

    def __init__(self, *, settings: SourceDbSettings | None = None) -> None:
        self._settings = settings

    def connection(self, descriptor: SourceDescriptor):
        return source_connection(descriptor, settings=self._settings)

    def query(self, connection, sql: str, params: Sequence[Any] | None = None) -> list[dict[str, Any]]:
        return query(connection, sql, params)
