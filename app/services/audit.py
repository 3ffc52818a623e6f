import logging

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from app.models.audit import AuditActorType, AuditLog

logger = logging.getLogger(__name__)


class AuditLogs:
    @staticmethod
    def record(
        db: Session,
        action: str,
        resource_type: str,
        resource_id: str | None = None,
        metadata: dict | None = None,
        actor_type: AuditActorType = AuditActorType.system,
        actor_id: str | None = None,
    ) -> AuditLog:
        """Append an audit row. The caller commits."""
        entry = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            metadata_=metadata,
            actor_type=actor_type,
            actor_id=actor_id,
        )
        db.add(entry)
        db.flush()
        logger.info("Audit %s on %s %s", action, resource_type, resource_id)
        return entry

    @staticmethod
    def latest(db: Session, action: str) -> AuditLog | None:
        return db.scalars(
            select(AuditLog)
            .where(AuditLog.action == action)
            .order_by(AuditLog.occurred_at.desc())
        ).first()

    @staticmethod
    def count_before(db: Session, cutoff) -> int:
        return db.scalar(
            select(func.count()).select_from(AuditLog).where(AuditLog.occurred_at < cutoff)
        ) or 0


audit_logs = AuditLogs()
