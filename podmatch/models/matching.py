from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from .analysis import AudienceLevel, HostStyle

ProcessingState = Literal["processing", "completed", "failed"]
PreferredLength = Literal["short", "medium", "long"]


class MatchWeights(BaseModel):
    """Relative weight of each sub-score in the overall author/podcast score."""
    topic: float = Field(0.35, ge=0)
    expertise: float = Field(0.40, ge=0)
    style: float = Field(0.10, ge=0)
    audience: float = Field(0.10, ge=0)
    format: float = Field(0.05, ge=0)


class MatchScoreBreakdown(BaseModel):
    topic_score: float = Field(..., ge=0.0, le=1.0)
    expertise_score: float = Field(..., ge=0.0, le=1.0)
    style_score: float = Field(..., ge=0.0, le=1.0)
    audience_score: float = Field(..., ge=0.0, le=1.0)
    format_score: float = Field(..., ge=0.0, le=1.0)
    explanation: List[str] = Field(default_factory=list, description="Human-readable reasons, strongest signals first.")


class MatchResult(BaseModel):
    """Scored outcome of comparing one author against one podcast."""
    author_id: str
    podcast_id: str
    overall_score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    breakdown: MatchScoreBreakdown
    suggested_topics: List[str] = Field(default_factory=list)
    rank: Optional[int] = Field(None, ge=1, description="1-based position in a batch result.")


class MatchFilter(BaseModel):
    """Caller-supplied narrowing of a batch run. Unset fields fall back to the batch config."""
    topics: List[str] = Field(default_factory=list, description="Candidates must carry every listed category.")
    exclude_podcast_ids: List[str] = Field(default_factory=list)
    min_score: Optional[float] = Field(None, ge=0.0, le=1.0)
    min_confidence: Optional[float] = Field(None, ge=0.0, le=1.0)
    max_results: Optional[int] = Field(None, ge=1)
    audience_levels: List[AudienceLevel] = Field(default_factory=list)

    class Config:
        extra = 'forbid'


class BatchProcessConfig(BaseModel):
    max_concurrent: int = Field(5, ge=1)
    min_match_score: float = Field(0.6, ge=0.0, le=1.0)
    min_confidence: float = Field(0.7, ge=0.0, le=1.0)
    max_results: int = Field(20, ge=1)

    class Config:
        validate_assignment = True
        extra = 'forbid'


class BatchProcessResult(BaseModel):
    author_id: str
    matches: List[MatchResult] = Field(default_factory=list)
    processed_count: int = 0
    total_candidates: int = 0
    processing_time_ms: float = 0.0


class ProcessingStatus(BaseModel):
    """Progress record for the latest batch run of an author."""
    author_id: str
    status: ProcessingState
    progress: float = Field(0.0, ge=0.0, le=1.0)
    processed_count: int = 0
    total_candidates: int = 0
    error: Optional[str] = None
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


# --- Preference-based matching --- #

class StylePreferences(BaseModel):
    is_interview_preferred: bool = False
    is_storytelling_preferred: bool = False
    is_educational_preferred: bool = False
    is_debate_preferred: bool = False


class UserPreferences(BaseModel):
    user_id: str
    topics: List[str] = Field(default_factory=list)
    preferred_length: Optional[PreferredLength] = None
    style_preferences: StylePreferences = Field(default_factory=StylePreferences)


class PreferenceWeights(BaseModel):
    """Relative weight of each factor in a preference match."""
    topic: float = Field(0.35, ge=0)
    style: float = Field(0.25, ge=0)
    length: float = Field(0.15, ge=0)
    complexity: float = Field(0.15, ge=0)
    quality: float = Field(0.10, ge=0)


class MatchFactors(BaseModel):
    topic_score: float = Field(..., ge=0.0, le=1.0)
    style_score: float = Field(..., ge=0.0, le=1.0)
    length_score: float = Field(..., ge=0.0, le=1.0)
    complexity_score: float = Field(..., ge=0.0, le=1.0)
    quality_score: float = Field(..., ge=0.0, le=1.0)


class ScoredMatch(BaseModel):
    podcast_id: str
    score: float = Field(..., ge=0.0, le=1.0)
    confidence: float = Field(..., ge=0.0, le=1.0)
    factors: MatchFactors
    reasons: List[str] = Field(default_factory=list)


class PreferenceAdjustment(BaseModel):
    """Per-user weights learned from interaction feedback by an external process."""
    user_id: str
    topic_weights: Dict[str, float] = Field(default_factory=dict)
    style_weights: Dict[HostStyle, float] = Field(default_factory=dict)
    last_adjusted: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
