# renoveasy_auth/schemas/common/common.py
from pydantic import BaseModel
from typing import Any, Dict, Optional


class ErrorBody(BaseModel):
    code: str
    message: str
    details: Dict[str, Any] = {}


class ApiResponse(BaseModel):
    success: bool
    message: Optional[str] = None
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
