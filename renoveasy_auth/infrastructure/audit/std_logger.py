import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from ...application.ports.audit_logger import AuditLogger


class StdAuditLogger(AuditLogger):
    def __init__(self) -> None:
        self._logger = logging.getLogger(__name__)

    def record(self, event: str, phone_masked: Optional[str], ip: Optional[str], user_agent: Optional[str],
               success: bool, timestamp: datetime, user_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> None:
        entry = {
            "timestamp": timestamp.isoformat(),
            "event": event,
            "phone": phone_masked,
            "user_id": user_id,
            "ip_address": ip,
            "user_agent": user_agent,
            "success": success,
            "details": details or {},
        }
        self._logger.info(f"AUDIT: {json.dumps(entry, default=str)}")
