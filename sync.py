import logging
import threading
from datetime import date, datetime
from enum import Enum
from typing import Callable, Optional

from sqlalchemy.orm import Session

from config import get_current_user_id
from database import SessionFactory, SessionLocal, session_scope
from models import Connection, SyncStatus, utcnow
from providers import ProviderClient
from reconciler import Reconciler

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500

# Hands a zero-argument task to whatever runs it (a scheduler job in the
# app, a direct call in tests). The caller never waits on the result.
Dispatch = Callable[[str, Callable[[], None]], None]


class EntityKind(str, Enum):
    accounts = "accounts"
    credit_cards = "credit_cards"
    investments = "investments"


def inline_dispatch(name: str, task: Callable[[], None]) -> None:
    task()


class SyncService:
    def __init__(
        self,
        session: Session,
        client: ProviderClient,
        user_id: Optional[int] = None,
        today: Optional[date] = None,
    ) -> None:
        self.session = session
        self.client = client
        self.user_id = user_id or get_current_user_id()
        self.reconciler = Reconciler(session, client, self.user_id, today=today)

    def sync(self, connection: Connection, now: Optional[datetime] = None) -> None:
        """Accounts, then credit cards, then investments. Records the outcome
        on the connection and re-raises on failure."""
        self._run(connection, list(EntityKind), now)

    def sync_entity(
        self,
        connection: Connection,
        kind: EntityKind,
        now: Optional[datetime] = None,
        record_success: bool = True,
    ) -> None:
        """Failure is always recorded; success only when ``record_success``,
        since a fan-out task is one part of a larger sync."""
        self._run(connection, [kind], now, record_success)

    def _run(
        self,
        connection: Connection,
        kinds: list[EntityKind],
        now: Optional[datetime],
        record_success: bool = True,
    ) -> None:
        try:
            for kind in kinds:
                self._sync_kind(connection, kind)
        except Exception as exc:
            self.session.rollback()
            self.record_failure(connection, exc)
            raise
        if record_success:
            self.record_success(connection, now)

    def _sync_kind(self, connection: Connection, kind: EntityKind) -> None:
        if kind == EntityKind.accounts:
            self.reconciler.sync_accounts(connection)
        elif kind == EntityKind.credit_cards:
            self.reconciler.sync_credit_cards(connection)
        else:
            self.reconciler.sync_investments(connection)

    def record_success(self, connection: Connection, now: Optional[datetime] = None) -> None:
        connection.last_sync_at = now or utcnow()
        connection.last_sync_status = SyncStatus.ok
        connection.last_error = None
        self.session.commit()

    def record_failure(self, connection: Connection, exc: Exception) -> None:
        connection.last_sync_status = SyncStatus.error
        connection.last_error = (str(exc) or exc.__class__.__name__)[:MAX_ERROR_LENGTH]
        self.session.commit()
        logger.error(
            f"sync: connection_id={connection.id} status=failed error={connection.last_error}"
        )


class FanOutBatch:
    """Shared outcome of one fan-out. Tasks report in as they finish; only the
    last one to finish, and only when no sibling failed, may mark the
    connection as synced."""

    def __init__(self, kinds):
        self._lock = threading.Lock()
        self._pending = set(kinds)
        self.failed: list[EntityKind] = []

    def finish(self, kind: EntityKind, failed: bool) -> bool:
        with self._lock:
            self._pending.discard(kind)
            if failed:
                self.failed.append(kind)
            return not self._pending and not self.failed


def run_entity_task(
    connection_id: int,
    user_id: int,
    kind: EntityKind,
    client: ProviderClient,
    factory: SessionFactory = SessionLocal,
    batch: Optional[FanOutBatch] = None,
) -> None:
    """One fan-out task: own session, own failure handling. Never raises.

    Without a batch the task records its own outcome. Inside a batch a
    failure is recorded at once, while success waits for the whole batch.
    """
    try:
        with session_scope(factory) as session:
            connection = session.get(Connection, connection_id)
            if not connection or connection.user_id != user_id:
                if batch:
                    batch.finish(kind, failed=True)
                logger.info(
                    f"sync_task: connection_id={connection_id} kind={kind.value} status=skipped"
                )
                return
            service = SyncService(session, client, user_id)
            try:
                service.sync_entity(connection, kind, record_success=batch is None)
            except Exception:
                if batch:
                    batch.finish(kind, failed=True)
                raise
            if batch and batch.finish(kind, failed=False):
                service.record_success(connection)
                logger.info(f"sync_batch: connection_id={connection_id} status=ok")
    except Exception:
        logger.error(
            f"sync_task: connection_id={connection_id} kind={kind.value} status=failed",
            exc_info=True,
        )
        return
    logger.info(f"sync_task: connection_id={connection_id} kind={kind.value} status=ok")


def fan_out(
    connection: Connection,
    client: ProviderClient,
    dispatch: Dispatch,
    factory: SessionFactory = SessionLocal,
) -> list[str]:
    """Queue one independent task per entity type for ``connection``.

    The connection ends as ``ok`` only if every task succeeds; any failed
    task leaves its error in place.
    """
    connection_id = connection.id
    user_id = connection.user_id
    batch = FanOutBatch(EntityKind)
    names: list[str] = []
    for kind in EntityKind:
        name = f"sync:{connection_id}:{kind.value}"

        def task(kind: EntityKind = kind) -> None:
            run_entity_task(connection_id, user_id, kind, client, factory, batch)

        dispatch(name, task)
        names.append(name)
    return names
