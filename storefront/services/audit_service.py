from __future__ import annotations

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from storefront.models import AuditLog, ErrorLog

log = structlog.get_logger(__name__)


def log_audit(
    db: Session,
    *,
    actor_email: str | None,
    action: str,
    target: str | None = None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_email=actor_email,
            action=action,
            target=target,
            ip=ip,
            meta=metadata or {},
        )
    )


def record_error(
    db: Session,
    *,
    source: str,
    message: str,
    request_id: str | None = None,
    metadata: dict | None = None,
) -> None:
    """Persist an error row in its own transaction; never raises."""
    try:
        db.rollback()
        db.add(ErrorLog(source=source, message=message[:2000], request_id=request_id, meta=metadata or {}))
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log.warning('error_log.write_failed', source=source, error=str(exc))
