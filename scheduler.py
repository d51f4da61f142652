import logging
import threading
import time
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from sqlalchemy import or_, select

from config import get_settings
from database import SessionFactory, SessionLocal, session_scope
from models import Connection, ConnectionStatus, utcnow
from providers import ProviderClient, ProviderUnavailable
from sync import SyncService

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(
        self,
        client: Optional[ProviderClient] = None,
        factory: SessionFactory = SessionLocal,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)
        self.client = client or ProviderClient(self.settings)
        self.factory = factory
        self.sleep = sleep

    def due_connection_ids(self, now: datetime) -> list[int]:
        cutoff = now - timedelta(minutes=self.settings.scheduled_sync_min_age_minutes)
        with session_scope(self.factory) as session:
            stmt = (
                select(Connection.id)
                .where(
                    Connection.status == ConnectionStatus.connected,
                    or_(Connection.last_sync_at.is_(None), Connection.last_sync_at < cutoff),
                )
                .order_by(Connection.id)
            )
            return list(session.scalars(stmt).all())

    def _sync_connection(self, connection_id: int, now: datetime) -> None:
        with session_scope(self.factory) as session:
            connection = session.get(Connection, connection_id)
            if connection is None:
                return
            service = SyncService(session, self.client, connection.user_id)
            try:
                self.client.update_item(connection.external_item_id)
            except ProviderUnavailable as exc:
                service.record_failure(connection, exc)
                raise
            self.sleep(self.settings.provider_refresh_delay_secs)
            service.sync(connection, now=now)

    def run_scheduled_sync(self, source: str = "manual", now: Optional[datetime] = None) -> tuple[int, int]:
        now = now or utcnow()
        logger.info(f"scheduler_run: source={source}")
        synced = 0
        failed = 0
        for connection_id in self.due_connection_ids(now):
            try:
                self._sync_connection(connection_id, now)
            except Exception:
                failed += 1
                logger.error(
                    f"scheduler_run: source={source} connection_id={connection_id} status=failed",
                    exc_info=True,
                )
                continue
            synced += 1
        logger.info(f"scheduler_run: source={source} synced={synced} failed={failed}")
        return synced, failed

    def dispatch(self, name: str, task: Callable[[], None]) -> None:
        """Run ``task`` detached from the caller as a one-off job."""
        if self.scheduler.running:
            self.scheduler.add_job(task, id=name, replace_existing=True, misfire_grace_time=300)
            return
        threading.Thread(target=task, name=name, daemon=True).start()

    def start(self) -> None:
        trigger = IntervalTrigger(hours=self.settings.scheduled_sync_hours)
        self.scheduler.add_job(
            self.run_scheduled_sync,
            trigger,
            args=["interval"],
            id="connections_sync",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.start()
        logger.info(
            f"Scheduler started with connection sync every {self.settings.scheduled_sync_hours}h"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
