from typing import Optional, Dict, Any, Protocol
from datetime import datetime


class AuditLogger(Protocol):
    def record(self, event: str, phone_masked: Optional[str], ip: Optional[str], user_agent: Optional[str],
               success: bool, timestamp: datetime, user_id: Optional[str] = None,
               details: Optional[Dict[str, Any]] = None) -> None:
        ...
