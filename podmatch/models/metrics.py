from pydantic import BaseModel, Field
from typing import Optional, Dict, Any
from datetime import datetime, timezone
import uuid

class MetricRecord(BaseModel):
    """
    Represents a single metric event recorded by the engine.
    """
    metric_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    event_name: str # e.g., "batch_started", "batch_completed", "candidate_failed"
    author_id: Optional[str] = None
    operation: Optional[str] = None # e.g., "find_matches", "get_analysis"
    duration_ms: Optional[float] = None # For timed events
    count: Optional[int] = None # For counting occurrences
    metadata: Optional[Dict[str, Any]] = None
