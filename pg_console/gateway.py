import logging
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, wait
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import psycopg
from psycopg import Error as PsycopgError
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from . import settings
from .errors import DatabaseConnectionError, StatementError
from .models import ConnectionDescriptor

logger = logging.getLogger("pg-console.gateway")


def _execute_safe(cur, query: Any, params: Any, operation: str, error: type) -> None:
    """Executes a statement, converting driver errors into `error(operation, cause)`."""
    try:
        if logger.isEnabledFor(logging.DEBUG):
            # Log query (truncated if too long for sanity)
            query_str = query if isinstance(query, str) else query.as_string(cur)
            if len(query_str) > 1000:
                query_str = query_str[:1000] + "..."
            logger.debug(f"[{operation}] Executing SQL: {query_str} | Params: {params}")

        cur.execute(query, params)
    except PsycopgError as e:
        logger.error(f"Database error during {operation}: {e}")
        raise error(operation, e) from e


class Session:
    """A per-request handle on the target database.

    Every call borrows a connection from the request's private pool, so
    independent statements can run side by side through `gather`.
    """

    def __init__(self, pool: ConnectionPool, database: str | None, workers: int | None = None):
        self._pool = pool
        self._workers = workers or settings.FANOUT_WORKERS
        self.database = database

    @contextmanager
    def _cursor(self):
        try:
            with self._pool.connection() as conn:
                with conn.cursor() as cur:
                    yield cur
        except PoolTimeout as e:
            raise DatabaseConnectionError(f"Connection to database '{self.database}' was lost: {e}") from e

    def fetch_all(self, operation: str, query: Any, params: Any = None, *, error: type = StatementError) -> list[dict[str, Any]]:
        with self._cursor() as cur:
            _execute_safe(cur, query, params, operation, error)
            return cur.fetchall() if cur.description else []

    def fetch_one(self, operation: str, query: Any, params: Any = None, *, error: type = StatementError) -> dict[str, Any] | None:
        with self._cursor() as cur:
            _execute_safe(cur, query, params, operation, error)
            return cur.fetchone() if cur.description else None

    def execute(self, operation: str, query: Any, params: Any = None, *, error: type = StatementError) -> int:
        with self._cursor() as cur:
            _execute_safe(cur, query, params, operation, error)
            return cur.rowcount

    def gather(self, tasks: dict[str, Callable[["Session"], Any]]) -> dict[str, Any]:
        """Run independent read tasks concurrently and join them.

        Either every task succeeds and the results come back keyed like
        `tasks`, or the failure of the earliest failing task (in `tasks`
        order) is raised and nothing is returned.
        """
        if not tasks:
            return {}

        workers = min(self._workers, len(tasks))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pg-console") as executor:
            futures = {name: executor.submit(task, self) for name, task in tasks.items()}
            _, pending = wait(futures.values(), return_when=FIRST_EXCEPTION)
            for future in pending:
                future.cancel()

        # earliest task in `tasks` order wins when several fail
        for future in futures.values():
            if not future.cancelled() and future.exception() is not None:
                raise future.exception()
        return {name: future.result() for name, future in futures.items()}


def _connect_once(descriptor: ConnectionDescriptor, conninfo: str, dbname: str | None) -> None:
    """A single direct connect, so refused connections and rejected logins
    fail fast with the server's own message instead of a pool timeout."""
    try:
        with psycopg.connect(conninfo, autocommit=True):
            pass
    except psycopg.OperationalError as e:
        reason = str(e).strip()
        logger.warning(f"Connection to {descriptor.host}:{descriptor.port}/{dbname or ''} failed: {reason}")
        raise DatabaseConnectionError(
            f"Could not connect to {descriptor.host}:{descriptor.port}/{dbname or ''}: {reason}"
        ) from e


@contextmanager
def open_session(
    descriptor: ConnectionDescriptor,
    *,
    database: str | None = None,
    timeout_ms: int | None = None,
) -> Iterator[Session]:
    """Open a short-lived pool against the target server and always close it.

    `database` overrides the descriptor's database (used to enumerate
    databases from the administrative database).
    """
    timeout_ms = settings.CONNECT_TIMEOUT_MS if timeout_ms is None else timeout_ms
    timeout_s = timeout_ms / 1000
    dbname = database if database is not None else descriptor.database

    logger.debug(f"Opening session to {descriptor.host}:{descriptor.port}/{dbname or ''} as {descriptor.username}")
    conninfo = descriptor.conninfo(dbname, timeout_ms)
    _connect_once(descriptor, conninfo, dbname)

    pool = ConnectionPool(
        conninfo=conninfo,
        min_size=1,
        max_size=settings.FANOUT_WORKERS,
        timeout=timeout_s,
        open=False,
        name="pg-console",
        kwargs={"autocommit": True, "row_factory": dict_row},
    )
    try:
        try:
            pool.open(wait=True, timeout=timeout_s)
        except PoolTimeout as e:
            logger.warning(f"Connection to {descriptor.host}:{descriptor.port} failed or timed out after {timeout_ms} ms")
            raise DatabaseConnectionError(
                f"Could not connect to {descriptor.host}:{descriptor.port}/{dbname or ''} within {timeout_ms} ms "
                "(server unreachable or credentials rejected)"
            ) from e
        yield Session(pool, dbname)
    finally:
        pool.close()
