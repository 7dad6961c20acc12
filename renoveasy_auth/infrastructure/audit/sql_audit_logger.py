import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from ...application.ports.audit_logger import AuditLogger
from ...db.models import AuthAuditLog

logger = logging.getLogger(__name__)


class SqlAuditLogger(AuditLogger):
    """Append-only rows in `auth_audit_log`. A failed write never fails the request."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def record(self, event: str, phone_masked: Optional[str], ip: Optional[str], user_agent: Optional[str],
               success: bool, timestamp: datetime, user_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> None:
        row = AuthAuditLog(
            event=event,
            phone_masked=phone_masked,
            user_id=user_id,
            ip_address=ip,
            user_agent=(user_agent or "")[:255] or None,
            success=success,
            details=json.dumps(details, default=str) if details else None,
            created_at=timestamp,
        )
        try:
            with Session(self.engine) as session:
                session.add(row)
                session.commit()
        except SQLAlchemyError as e:
            logger.error(f"Failed to write audit entry {event}: {e}")
