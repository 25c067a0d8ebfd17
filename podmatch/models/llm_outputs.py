"""Schemas for the JSON the LLM is asked to return, and the decode boundary for it.

LLM replies are free text that is *expected* to be JSON. `parse_llm_json`
never trusts that expectation: it returns a tagged result that callers
branch on instead of assuming required fields are present.
"""
import json
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Generic, List, Optional, Type, TypeVar, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic.alias_generators import to_camel

from .analysis import (
    AudienceLevel,
    AuthorAnalysis,
    ComplexityLevel,
    ContentStyle,
    ExpertiseLevel,
    GuestRequirements,
    HostStyle,
    PodcastAnalysis,
    PodcastFeatures,
    TopicDepth,
)

M = TypeVar("M", bound=BaseModel)

# Vocabulary the model tends to use that maps onto our fixed categories.
_HOST_STYLE_SYNONYMS = {
    "conversational": "interview",
    "storytelling": "narrative",
    "story": "narrative",
    "panel": "debate",
    "discussion": "debate",
    "lecture": "educational",
}
_TOPIC_DEPTH_SYNONYMS = {"surface": "shallow", "comprehensive": "deep", "in-depth": "deep"}
_EXPERTISE_SYNONYMS = {"novice": "beginner", "advanced": "expert", "thought leader": "lead", "leader": "lead"}
_COMPLEXITY_SYNONYMS = {"basic": "beginner", "simple": "beginner", "expert": "advanced", "moderate": "intermediate"}

_FENCE_RE = re.compile(r"^```(?:json)?\s*(.*?)\s*```$", re.DOTALL | re.IGNORECASE)


def _normalize_choice(value: Any, synonyms: Dict[str, str]) -> Any:
    if isinstance(value, str):
        cleaned = value.strip().lower()
        return synonyms.get(cleaned, cleaned)
    return value


class _LLMOutput(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class LLMAuthorAnalysis(_LLMOutput):
    topics: List[str] = Field(default_factory=list, max_length=10)
    expertise_level: ExpertiseLevel
    communication_style: str
    key_points: List[str] = Field(default_factory=list)
    confidence: float = Field(0.8, ge=0.0, le=1.0)

    @field_validator("expertise_level", mode="before")
    @classmethod
    def _expertise(cls, v):
        return _normalize_choice(v, _EXPERTISE_SYNONYMS)

    @field_validator("communication_style", mode="before")
    @classmethod
    def _style(cls, v):
        return _normalize_choice(v, {})

    def to_analysis(self, author_id: str, analyzed_at: datetime) -> AuthorAnalysis:
        return AuthorAnalysis(
            author_id=author_id,
            topics=self.topics,
            expertise_level=self.expertise_level,
            communication_style=self.communication_style,
            key_points=self.key_points,
            confidence=self.confidence,
            last_analyzed=analyzed_at,
        )


class LLMGuestRequirements(_LLMOutput):
    minimum_expertise: Optional[ExpertiseLevel] = None
    preferred_topics: List[str] = Field(default_factory=list)
    communication_preference: List[str] = Field(default_factory=list)

    @field_validator("minimum_expertise", mode="before")
    @classmethod
    def _expertise(cls, v):
        v = _normalize_choice(v, _EXPERTISE_SYNONYMS)
        return None if v in ("", "none", "any", "n/a") else v

    @field_validator("communication_preference", mode="before")
    @classmethod
    def _preferences(cls, v):
        # Occasionally returned as a single comma separated string
        if isinstance(v, str):
            return [part.strip() for part in v.split(",") if part.strip()]
        return v


class LLMPodcastAnalysis(_LLMOutput):
    host_style: HostStyle
    audience_level: AudienceLevel
    topic_depth: TopicDepth = "moderate"
    guest_requirements: LLMGuestRequirements = Field(default_factory=LLMGuestRequirements)
    topical_focus: List[str] = Field(default_factory=list)
    confidence: float = Field(0.8, ge=0.0, le=1.0)

    @field_validator("host_style", mode="before")
    @classmethod
    def _host_style(cls, v):
        return _normalize_choice(v, _HOST_STYLE_SYNONYMS)

    @field_validator("audience_level", mode="before")
    @classmethod
    def _audience(cls, v):
        return _normalize_choice(v, {})

    @field_validator("topic_depth", mode="before")
    @classmethod
    def _depth(cls, v):
        return _normalize_choice(v, _TOPIC_DEPTH_SYNONYMS)

    def to_analysis(self, podcast_id: str, analyzed_at: datetime) -> PodcastAnalysis:
        return PodcastAnalysis(
            podcast_id=podcast_id,
            host_style=self.host_style,
            audience_level=self.audience_level,
            topic_depth=self.topic_depth,
            guest_requirements=GuestRequirements(**self.guest_requirements.model_dump()),
            topical_focus=self.topical_focus,
            confidence=self.confidence,
            last_analyzed=analyzed_at,
        )


class LLMContentStyle(_LLMOutput):
    is_interview: bool = False
    is_narrative: bool = False
    is_educational: bool = False
    is_debate: bool = False


class LLMPodcastFeatures(_LLMOutput):
    main_topics: List[str] = Field(default_factory=list)
    content_style: LLMContentStyle = Field(default_factory=LLMContentStyle)
    complexity_level: Optional[ComplexityLevel] = None
    production_quality: Optional[float] = Field(None, ge=0, le=100)
    hosting_style: List[str] = Field(default_factory=list)

    @field_validator("complexity_level", mode="before")
    @classmethod
    def _complexity(cls, v):
        return _normalize_choice(v, _COMPLEXITY_SYNONYMS)

    def to_features(self, podcast_id: str, average_episode_length: Optional[float]) -> PodcastFeatures:
        return PodcastFeatures(
            podcast_id=podcast_id,
            main_topics=self.main_topics,
            content_style=ContentStyle(**self.content_style.model_dump()),
            complexity_level=self.complexity_level,
            average_episode_length=average_episode_length,
            production_quality=self.production_quality,
            hosting_style=self.hosting_style,
        )


# --- Tagged parse result --- #

@dataclass(frozen=True)
class ParseSuccess(Generic[M]):
    value: M
    ok: bool = True


@dataclass(frozen=True)
class ParseFailure:
    error: str
    raw: str
    ok: bool = False


ParseResult = Union[ParseSuccess[M], ParseFailure]


def extract_json_object(text: str) -> Optional[str]:
    """Pull the outermost JSON object out of a completion, ignoring fences and chatter."""
    if not text:
        return None
    candidate = text.strip()
    fenced = _FENCE_RE.match(candidate)
    if fenced:
        candidate = fenced.group(1)
    start = candidate.find("{")
    end = candidate.rfind("}")
    if start == -1 or end < start:
        return None
    return candidate[start:end + 1]


def parse_llm_json(text: str, response_model: Type[M]) -> "ParseResult[M]":
    """Decode an LLM completion into `response_model` without raising."""
    payload = extract_json_object(text)
    if payload is None:
        return ParseFailure(error="No JSON object found in completion", raw=text or "")
    try:
        data = json.loads(payload)
    except json.JSONDecodeError as e:
        return ParseFailure(error=f"Invalid JSON: {e}", raw=text)
    if not isinstance(data, dict):
        return ParseFailure(error="Completion JSON is not an object", raw=text)
    try:
        return ParseSuccess(value=response_model.model_validate(data))
    except ValidationError as ve:
        return ParseFailure(error=f"Validation failed for {response_model.__name__}: {ve}", raw=text)
