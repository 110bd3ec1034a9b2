import asyncio
import logging
from typing import Awaitable, Callable, TypeVar

from fastapi import Request
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from packbattle.load_secrets import db_retry_attempts, db_retry_delay
from packbattle.models import basic_authentication_shemas  # noqa: F401  registers the credentials table
from packbattle.models.schemas import Base

T = TypeVar("T")

TRANSIENT_ERRORS = (OperationalError, InterfaceError)


class Database:
    """Datastore client with an explicit open/close lifecycle.

    One instance is created at process start and passed to every service call.
    """

    def __init__(self, url: str, echo: bool = False):
        self.url = url
        self.echo = echo
        self.engine: AsyncEngine | None = None
        self.Session: async_sessionmaker | None = None

    def open(self) -> "Database":
        if self.engine is not None:
            return self
        if self.url.startswith("postgresql"):
            self.engine = create_async_engine(self.url, echo=self.echo, pool_size=20, max_overflow=20)
        else:
            self.engine = create_async_engine(self.url, echo=self.echo)
        self.Session = async_sessionmaker(
            autocommit=False,
            class_=AsyncSession,
            autoflush=True,
            expire_on_commit=False,
            bind=self.engine,
        )
        logging.info(f"Opened database engine for {self.engine.url.render_as_string(hide_password=True)}")
        return self

    async def create_tables(self) -> None:
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self.Session = None
        logging.info("Closed database engine")

    def session(self) -> AsyncSession:
        if self.Session is None:
            raise RuntimeError("Database is not open")
        return self.Session()


def get_database(request: Request) -> Database:
    return request.app.state.database


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    attempts: int | None = None,
    delay: float | None = None,
) -> T:
    """Run a read-only datastore operation, retrying transient failures.

    Backoff is linear: the n-th retry waits ``delay * n`` seconds. Only use this
    for lookups that have no side effects.
    """
    # at least one try, whatever the configuration says
    attempts = max(1, db_retry_attempts if attempts is None else attempts)
    delay = db_retry_delay if delay is None else delay

    attempt = 0
    last_exc: Exception | None = None
    while attempt < attempts:
        try:
            return await operation()
        except TRANSIENT_ERRORS as exc:
            last_exc = exc
            logging.warning(f"[{label}] transient datastore error (attempt {attempt + 1}/{attempts}): {exc}")
        attempt += 1
        if attempt < attempts:
            await asyncio.sleep(delay * attempt)

    logging.error(f"[{label}] giving up after {attempts} attempts")
    raise last_exc
