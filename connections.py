import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session, joinedload

from config import get_current_user_id, get_settings
from database import SessionFactory, SessionLocal
from models import Connection, ConnectionStatus, utcnow
from providers import ProviderClient, ProviderUnavailable
from reconciler import Reconciler
from schemas import WebhookEventIn
from sync import Dispatch, SyncService, fan_out

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("open_finance", "b3")
RESYNC_EVENTS = ("item/updated", "item/error")

_COMMON_STATUS: dict[str, ConnectionStatus] = {
    "UPDATED": ConnectionStatus.connected,
    "WAITING_USER_ACTION": ConnectionStatus.pending,
    "UPDATING": ConnectionStatus.pending,
    "USER_INPUT": ConnectionStatus.needs_reauth,
    "INVALID_CREDENTIALS": ConnectionStatus.failed,
}


class ConnectionValidationError(ValueError):
    pass


class RateLimited(ValueError):
    def __init__(self, retry_after_secs: int) -> None:
        super().__init__(
            f"Sync requested too soon; retry in {retry_after_secs} seconds"
        )
        self.retry_after_secs = retry_after_secs


def status_on_create(provider_status: Optional[str]) -> ConnectionStatus:
    # LOGIN_ERROR still links the connection; the user can fix it later.
    status = (provider_status or "").upper()
    if status == "LOGIN_ERROR":
        return ConnectionStatus.connected
    return _COMMON_STATUS.get(status, ConnectionStatus.pending)


def status_on_webhook(provider_status: Optional[str]) -> ConnectionStatus:
    status = (provider_status or "").upper()
    if status == "LOGIN_ERROR":
        return ConnectionStatus.failed
    return _COMMON_STATUS.get(status, ConnectionStatus.pending)


@dataclass
class WebhookOutcome:
    handled: bool
    connection_id: Optional[int] = None
    status: Optional[ConnectionStatus] = None
    dispatched: int = 0


class ConnectionService:
    def __init__(
        self,
        session: Session,
        client: ProviderClient,
        user_id: Optional[int] = None,
        factory: SessionFactory = SessionLocal,
    ) -> None:
        self.session = session
        self.client = client
        self.user_id = user_id or get_current_user_id()
        self.factory = factory
        self.settings = get_settings()

    def list_all(self) -> list[Connection]:
        stmt = (
            select(Connection)
            .options(joinedload(Connection.institution))
            .where(Connection.user_id == self.user_id)
            .order_by(Connection.created_at.desc(), Connection.id.desc())
        )
        return list(self.session.scalars(stmt).all())

    def get(self, connection_id: int) -> Connection:
        connection = self.session.get(Connection, connection_id)
        if not connection or connection.user_id != self.user_id:
            raise ValueError("Connection not found")
        return connection

    def create(self, item_id: str, provider: str = "open_finance") -> Connection:
        item_id = (item_id or "").strip()
        if not item_id:
            raise ConnectionValidationError("item_id is required")
        if provider not in SUPPORTED_PROVIDERS:
            raise ConnectionValidationError(f"Unsupported provider: {provider}")

        item = self.client.get_item(item_id)
        institution_id = None
        if item.connector is not None:
            institution = Reconciler(self.session, self.client, self.user_id).upsert_institution(
                provider, item.connector
            )
            institution_id = institution.id
        status = status_on_create(item.status)

        connection = self.session.scalar(
            select(Connection).where(
                Connection.user_id == self.user_id,
                Connection.external_item_id == item_id,
            )
        )
        if connection:
            connection.provider = provider
            connection.status = status
            if institution_id is not None:
                connection.institution_id = institution_id
        else:
            connection = Connection(
                user_id=self.user_id,
                provider=provider,
                external_item_id=item_id,
                institution_id=institution_id,
                status=status,
            )
            self.session.add(connection)
        self.session.commit()
        self.session.refresh(connection)
        logger.info(
            f"connection_created: connection_id={connection.id} status={connection.status.value}"
        )
        return connection

    def request_sync(self, connection_id: int, now: Optional[datetime] = None) -> Connection:
        """Manual sync, refused while the last successful sync is younger
        than the cooldown."""
        now = now or utcnow()
        connection = self.get(connection_id)
        cooldown = timedelta(minutes=self.settings.sync_cooldown_minutes)
        if connection.last_sync_at is not None:
            elapsed = now - connection.last_sync_at
            if elapsed < cooldown:
                remaining = cooldown - elapsed
                raise RateLimited(max(1, int(remaining.total_seconds() + 0.999)))

        SyncService(self.session, self.client, self.user_id).sync(connection, now=now)
        return connection

    def handle_webhook(self, event: WebhookEventIn, dispatch: Dispatch) -> WebhookOutcome:
        if event.event not in RESYNC_EVENTS or not event.item_id:
            logger.info(f"webhook_ignored: event={event.event}")
            return WebhookOutcome(handled=False)

        connection = self.session.scalar(
            select(Connection)
            .where(Connection.external_item_id == event.item_id)
            .order_by(Connection.id)
        )
        if not connection:
            logger.info(f"webhook_ignored: event={event.event} reason=unknown_item")
            return WebhookOutcome(handled=False)

        item = self.client.get_item(event.item_id)
        connection.status = status_on_webhook(item.status)
        self.session.commit()

        dispatched = 0
        if connection.status == ConnectionStatus.connected:
            dispatched = len(fan_out(connection, self.client, dispatch, self.factory))
        logger.info(
            f"webhook_handled: event={event.event} connection_id={connection.id} "
            f"status={connection.status.value} dispatched={dispatched}"
        )
        return WebhookOutcome(
            handled=True,
            connection_id=connection.id,
            status=connection.status,
            dispatched=dispatched,
        )

    def delete(self, connection_id: int) -> None:
        connection = self.get(connection_id)
        try:
            self.client.delete_item(connection.external_item_id)
        except ProviderUnavailable as exc:
            logger.warning(
                f"connection_remote_delete: connection_id={connection.id} status=failed error={exc}"
            )
        self.session.delete(connection)
        self.session.commit()
        logger.info(f"connection_deleted: connection_id={connection_id}")
