from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from notifyhub.domain.attempts import NotificationAttempt
from notifyhub.domain.models import NotificationLog
from notifyhub.services.telemetry import increment_counter


logger = logging.getLogger(__name__)


class AuditLogger:
    """Append-only writer for notification attempts.

    Writes are best-effort: an audit-store outage is logged and reported
    through the return value, never raised into message processing.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def record(self, attempt: NotificationAttempt) -> bool:
        row = NotificationLog(
            id=attempt.id,
            channel=attempt.channel,
            recipient_id=attempt.recipient_id,
            tenant_id=attempt.tenant_id,
            message_text=attempt.message_text,
            notification_type=attempt.notification_type,
            status=attempt.status,
            error_detail=attempt.error_detail,
            provider_message_id=attempt.provider_message_id,
            created_at=attempt.created_at,
        )
        try:
            async with self._session_factory() as session:
                try:
                    session.add(row)
                    await session.commit()
                except (SQLAlchemyError, OSError):
                    await session.rollback()
                    raise
        except (SQLAlchemyError, OSError) as exc:
            # Covers unreachable databases, which asyncpg can surface as raw OSError.
            increment_counter("notification_audit_write_failures_total")
            logger.error(
                "notification_audit_write_failed attempt_id=%s type=%s status=%s recipient=%s",
                attempt.id,
                attempt.notification_type,
                attempt.status,
                attempt.recipient_id,
                exc_info=exc,
            )
            return False
        increment_counter(f"notifications_{attempt.status}_total")
        return True
