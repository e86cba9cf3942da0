import logging
from datetime import datetime
from enum import StrEnum
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from src.core.audit.models import AuditLog

logger = logging.getLogger(__name__)


class AuditResult(StrEnum):
    """Outcome of an audited operation."""

    SUCCESS = "success"
    WARNING = "warning"
    FAILURE = "failure"


class AuditOperation(StrEnum):
    """Audited attachment operations."""

    VALIDATION_TYPE = "validation_type"
    VALIDATION_SIZE = "validation_size"
    VALIDATION_QUOTA = "validation_quota"
    UPLOAD_STARTED = "upload_started"
    UPLOAD_COMPLETED = "upload_completed"
    UPLOAD_FAILED = "upload_failed"
    TOKEN_ISSUED = "token_issued"
    TOKEN_VALIDATED = "token_validated"
    TOKEN_RENEWED = "token_renewed"
    TOKEN_REVOKED = "token_revoked"
    ATTACHMENT_REMOVED = "attachment_removed"
    MOVED_TO_PERMANENT = "moved_to_permanent"
    STORAGE_ERROR = "storage_error"
    DATABASE_ERROR = "database_error"
    CLEANUP_EXPIRED = "cleanup_expired"
    WEBHOOK_PREPARED = "webhook_prepared"
    ALERT_CREATED = "alert_created"
    MONITORING_STARTED = "monitoring_started"
    MONITORING_STOPPED = "monitoring_stopped"
    METRICS_UPDATED = "metrics_updated"


_LOG_LEVELS = {
    AuditResult.SUCCESS: logging.INFO,
    AuditResult.WARNING: logging.WARNING,
    AuditResult.FAILURE: logging.ERROR,
}


class AuditService:
    """Records attachment events to the audit log and the application logger.

    Warning and failure records are written through ``session_factory`` when
    one is given, so a rejected or failed request still leaves its trail after
    the caller's transaction is rolled back.
    """

    def __init__(
        self,
        db: AsyncSession,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
    ):
        self.db = db
        self.session_factory = session_factory

    async def record(
        self,
        operation: str | AuditOperation,
        entity_type: str,
        details: dict[str, Any] | None = None,
        result: AuditResult = AuditResult.SUCCESS,
        entity_id: str | None = None,
        actor_id: str | None = None,
        duration_ms: int | None = None,
    ) -> AuditLog:
        """Create an audit log entry."""
        result = AuditResult(result)
        logger.log(
            _LOG_LEVELS[result],
            "%s %s entity=%s result=%s details=%s",
            operation,
            entity_type,
            entity_id,
            result,
            details,
        )
        audit_log = AuditLog(
            operation=str(operation),
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            result=str(result),
            details=details,
            duration_ms=duration_ms,
        )

        if result != AuditResult.SUCCESS and self.session_factory is not None:
            try:
                async with self.session_factory() as session:
                    session.add(audit_log)
                    await session.commit()
            except SQLAlchemyError:
                logger.exception("Could not persist %s audit record for %s", result, operation)
            return audit_log

        self.db.add(audit_log)
        if result != AuditResult.FAILURE:
            await self.db.flush()
            return audit_log
        # The caller's session may be the thing that failed
        try:
            await self.db.flush()
        except SQLAlchemyError:
            logger.exception("Could not persist failure audit record for %s", operation)
            if audit_log in self.db:
                self.db.expunge(audit_log)
        return audit_log


async def list_audit_entries(
    session: AsyncSession,
    *,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    entity_type: str | None = None,
    entity_id: str | None = None,
    operation: str | None = None,
    result: str | None = None,
    page: int = 1,
    limit: int = 50,
) -> tuple[list[AuditLog], int]:
    """
    List audit log entries with optional filters.
    Returns (entries newest first, total_count).
    """
    q = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    count_q = select(func.count()).select_from(AuditLog)
    filters = []
    if date_from is not None:
        filters.append(AuditLog.created_at >= date_from)
    if date_to is not None:
        filters.append(AuditLog.created_at <= date_to)
    if entity_type is not None:
        filters.append(AuditLog.entity_type == entity_type)
    if entity_id is not None:
        filters.append(AuditLog.entity_id == entity_id)
    if operation is not None:
        filters.append(AuditLog.operation == operation)
    if result is not None:
        filters.append(AuditLog.result == result)
    for condition in filters:
        q = q.where(condition)
        count_q = count_q.where(condition)

    total = (await session.execute(count_q)).scalar_one()

    q = q.offset((page - 1) * limit).limit(limit)
    rows = (await session.execute(q)).scalars().all()
    return list(rows), total
