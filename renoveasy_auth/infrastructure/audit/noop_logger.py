from datetime import datetime
from typing import Optional, Dict, Any

from ...application.ports.audit_logger import AuditLogger


class NoopAuditLogger(AuditLogger):
    def record(self, event: str, phone_masked: Optional[str], ip: Optional[str], user_agent: Optional[str],
               success: bool, timestamp: datetime, user_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> None:
        return None
