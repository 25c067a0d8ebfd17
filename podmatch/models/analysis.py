from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

ExpertiseLevel = Literal["beginner", "intermediate", "expert", "lead"]
AudienceLevel = Literal["beginner", "intermediate", "expert", "mixed"]
HostStyle = Literal["interview", "narrative", "educational", "debate"]
TopicDepth = Literal["shallow", "moderate", "deep"]
ComplexityLevel = Literal["beginner", "intermediate", "advanced"]

# Ordered lowest to highest; scoring measures distance along these scales.
EXPERTISE_SCALE: List[str] = ["beginner", "intermediate", "expert", "lead"]
COMPLEXITY_SCALE: List[str] = ["beginner", "intermediate", "advanced"]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# --- Subject entities --- #

class BookInfo(BaseModel):
    title: str
    description: Optional[str] = None
    genre: List[str] = Field(default_factory=list)
    target_audience: List[str] = Field(default_factory=list)


class AuthorProfile(BaseModel):
    """An author as stored by the surrounding application."""
    id: str
    name: str
    bio: Optional[str] = None
    books: List[BookInfo] = Field(default_factory=list)


class PodcastRecord(BaseModel):
    """A podcast in the candidate catalog."""
    id: str
    title: str
    description: Optional[str] = None
    publisher: Optional[str] = None
    categories: List[str] = Field(default_factory=list)
    average_episode_length: Optional[float] = Field(None, ge=0, description="Average episode length in minutes.")
    total_episodes: Optional[int] = Field(None, ge=0)
    language: Optional[str] = None
    format: Optional[HostStyle] = None
    rating: Optional[float] = Field(None, ge=0, le=5)


# --- LLM-derived analyses --- #

class AuthorAnalysis(BaseModel):
    """Semantic profile of an author, derived from their bio and books."""
    author_id: str
    topics: List[str] = Field(default_factory=list)
    expertise_level: ExpertiseLevel
    communication_style: str
    key_points: List[str] = Field(default_factory=list)
    confidence: float = Field(0.8, ge=0.0, le=1.0)
    last_analyzed: datetime = Field(default_factory=_utcnow)


class GuestRequirements(BaseModel):
    minimum_expertise: Optional[ExpertiseLevel] = None
    preferred_topics: List[str] = Field(default_factory=list)
    communication_preference: List[str] = Field(default_factory=list)


class PodcastAnalysis(BaseModel):
    """Semantic profile of a podcast: format, audience and what it wants from guests."""
    podcast_id: str
    host_style: HostStyle
    audience_level: AudienceLevel
    topic_depth: TopicDepth = "moderate"
    guest_requirements: GuestRequirements = Field(default_factory=GuestRequirements)
    topical_focus: List[str] = Field(default_factory=list)
    confidence: float = Field(0.8, ge=0.0, le=1.0)
    last_analyzed: datetime = Field(default_factory=_utcnow)


class ContentStyle(BaseModel):
    is_interview: bool = False
    is_narrative: bool = False
    is_educational: bool = False
    is_debate: bool = False


class PodcastFeatures(BaseModel):
    """Content features extracted from a podcast, used for preference matching."""
    podcast_id: str
    main_topics: List[str] = Field(default_factory=list)
    content_style: ContentStyle = Field(default_factory=ContentStyle)
    complexity_level: Optional[ComplexityLevel] = None
    average_episode_length: Optional[float] = Field(None, ge=0)
    production_quality: Optional[float] = Field(None, ge=0, le=100)
    hosting_style: List[str] = Field(default_factory=list)
