from datetime import datetime, timezone
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field

ErrorSeverity = Literal["low", "medium", "high", "critical"]


class ErrorContext(BaseModel):
    user_id: Optional[str] = None
    operation: Optional[str] = None
    attempt: Optional[int] = None
    podcast_id: Optional[str] = None
    extra: Dict[str, Any] = Field(default_factory=dict)


class ErrorReport(BaseModel):
    """An error persisted to the error log for offline diagnosis."""
    error_type: str
    message: str
    severity: ErrorSeverity
    context: ErrorContext = Field(default_factory=ErrorContext)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
