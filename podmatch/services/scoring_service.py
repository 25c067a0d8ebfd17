"""Deterministic compatibility scoring.

Both entry points combine weighted sub-scores in [0, 1] and use the same two
primitives: Jaccard overlap for topic sets and `ordinal_score` for anything
measured on an ordered scale (expertise, audience level, complexity).
Nothing here performs I/O, so the functions are safe to call concurrently.
"""
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

from ..models.analysis import (
    COMPLEXITY_SCALE,
    EXPERTISE_SCALE,
    AuthorAnalysis,
    PodcastAnalysis,
    PodcastFeatures,
)
from ..models.matching import (
    MatchFactors,
    MatchResult,
    MatchScoreBreakdown,
    MatchWeights,
    PreferenceAdjustment,
    PreferenceWeights,
    ScoredMatch,
    UserPreferences,
)
from ..utils.text_utils import normalize_term, normalize_terms

logger = logging.getLogger(__name__)

DEFAULT_WEIGHTS = MatchWeights()
DEFAULT_PREFERENCE_WEIGHTS = PreferenceWeights()

# Host styles each communication style tends to do well in.
STYLE_COMPATIBILITY: Dict[str, List[str]] = {
    "casual": ["interview", "narrative"],
    "professional": ["interview", "educational", "debate"],
    "academic": ["educational", "debate"],
    "storyteller": ["narrative", "interview"],
}

# Minutes, inclusive lower bound.
LENGTH_RANGES = {
    "short": (0.0, 30.0),
    "medium": (30.0, 60.0),
    "long": (60.0, None),
}

STRONG_TOPIC = 0.6
WEAK_TOPIC = 0.3
STRONG_EXPERTISE = 0.8
WEAK_EXPERTISE = 0.3
STRONG_STYLE = 0.8
WEAK_STYLE = 0.6
STRONG_AUDIENCE = 0.8
WEAK_AUDIENCE = 0.5
NEUTRAL = 0.5
MAX_SUGGESTED_TOPICS = 5


# --- Shared primitives ---

def clamp(value: float, low: float = 0.0, high: float = 1.0) -> float:
    return max(low, min(high, value))


def jaccard_similarity(a: Optional[Iterable[str]], b: Optional[Iterable[str]]) -> float:
    """Intersection over union of the normalized terms; 0.0 if either side is empty."""
    set_a, set_b = normalize_terms(a), normalize_terms(b)
    if not set_a or not set_b:
        return 0.0
    return len(set_a & set_b) / len(set_a | set_b)


def ordinal_score(actual: Optional[str], required: Optional[str], scale: Sequence[str] = EXPERTISE_SCALE) -> float:
    """1.0 when `actual` meets `required` on `scale`, falling off as 1 / (1 + steps**2) below it.

    One step short scores 0.5, two steps 0.2, three 0.1. An unknown
    requirement is always met; an unknown `actual` counts as the lowest level.
    """
    required_norm = normalize_term(required)
    if required_norm not in scale:
        return 1.0
    actual_norm = normalize_term(actual)
    actual_rank = scale.index(actual_norm) if actual_norm in scale else 0
    steps_below = scale.index(required_norm) - actual_rank
    if steps_below <= 0:
        return 1.0
    return 1.0 / (1 + steps_below ** 2)


def _normalized(weights: Dict[str, float]) -> Dict[str, float]:
    total = sum(weights.values())
    if total <= 0:
        raise ValueError(f"Weights must have a positive sum: {weights}")
    if abs(total - 1.0) > 1e-9:
        logger.warning(f"Scoring weights do not sum to 1.0: {weights}. Normalizing.")
        return {k: v / total for k, v in weights.items()}
    return weights


# --- Author / podcast sub-scores ---

def calculate_topic_score(author: AuthorAnalysis, podcast: PodcastAnalysis) -> float:
    """Best overlap of the author's topics with the show's focus or its preferred guest topics."""
    return max(
        jaccard_similarity(author.topics, podcast.topical_focus),
        jaccard_similarity(author.topics, podcast.guest_requirements.preferred_topics),
    )


def calculate_expertise_score(author: AuthorAnalysis, podcast: PodcastAnalysis) -> float:
    return ordinal_score(author.expertise_level, podcast.guest_requirements.minimum_expertise)


def calculate_style_score(author: AuthorAnalysis, podcast: PodcastAnalysis) -> float:
    preferences = normalize_terms(podcast.guest_requirements.communication_preference)
    if not preferences:
        return NEUTRAL
    return 1.0 if normalize_term(author.communication_style) in preferences else NEUTRAL


def calculate_audience_score(author: AuthorAnalysis, podcast: PodcastAnalysis) -> float:
    if podcast.audience_level == "mixed":
        return 1.0
    return ordinal_score(author.expertise_level, podcast.audience_level)


def calculate_format_score(author: AuthorAnalysis, podcast: PodcastAnalysis) -> float:
    compatible = STYLE_COMPATIBILITY.get(normalize_term(author.communication_style))
    if compatible is None:
        style_fit = NEUTRAL
    else:
        style_fit = 1.0 if podcast.host_style in compatible else 0.0
    preferred = normalize_terms(podcast.guest_requirements.preferred_topics)
    topic_fit = 1.0 if preferred & normalize_terms(author.topics) else 0.0
    return clamp(0.6 * style_fit + 0.4 * topic_fit)


def _adjust_topic_score(score: float, author: AuthorAnalysis, podcast: PodcastAnalysis, adjustment: PreferenceAdjustment) -> float:
    weights = {normalize_term(k): v for k, v in adjustment.topic_weights.items()}
    focus = normalize_terms(podcast.topical_focus) | normalize_terms(podcast.guest_requirements.preferred_topics)
    overlap = normalize_terms(author.topics) & focus
    if not overlap:
        return score
    factor = sum(weights.get(topic, 1.0) for topic in overlap) / len(overlap)
    return clamp(score * factor)


def build_explanation(topic: float, expertise: float, style: float, audience: float) -> List[str]:
    """One line per sub-score that is clearly strong or clearly weak, in fixed order."""
    explanation = []
    if topic > STRONG_TOPIC:
        explanation.append("Strong topic alignment with podcast focus")
    elif topic < WEAK_TOPIC:
        explanation.append("Limited topic relevance to podcast")

    if expertise >= STRONG_EXPERTISE:
        explanation.append("Expertise level matches podcast requirements")
    elif expertise < WEAK_EXPERTISE:
        explanation.append("Expertise level may be insufficient")

    if style >= STRONG_STYLE:
        explanation.append("Communication style aligns well with podcast format")
    elif style < WEAK_STYLE:
        explanation.append("Communication style may need adaptation")

    if audience >= STRONG_AUDIENCE:
        explanation.append("Well-suited for podcast audience level")
    elif audience < WEAK_AUDIENCE:
        explanation.append("May need to adjust content for audience level")
    return explanation


def suggest_topics(author: AuthorAnalysis, podcast: PodcastAnalysis) -> List[str]:
    focus = normalize_terms(podcast.topical_focus) | normalize_terms(podcast.guest_requirements.preferred_topics)
    suggestions: List[str] = []
    seen: Set[str] = set()

    def add(item: str) -> None:
        key = normalize_term(item)
        if key and key not in seen:
            seen.add(key)
            suggestions.append(item)

    for topic in author.topics:
        if normalize_term(topic) in focus:
            add(topic)
    for point in author.key_points:
        point_norm = normalize_term(point)
        if any(topic in point_norm for topic in focus):
            add(point)
    return suggestions[:MAX_SUGGESTED_TOPICS]


def match_author_to_podcast(
    author: AuthorAnalysis,
    podcast: PodcastAnalysis,
    weights: Optional[MatchWeights] = None,
    adjustment: Optional[PreferenceAdjustment] = None,
) -> MatchResult:
    """Scores how well `author` fits `podcast` as a guest."""
    w = _normalized((weights or DEFAULT_WEIGHTS).model_dump())

    topic_score = calculate_topic_score(author, podcast)
    expertise_score = calculate_expertise_score(author, podcast)
    style_score = calculate_style_score(author, podcast)
    audience_score = calculate_audience_score(author, podcast)
    format_score = calculate_format_score(author, podcast)

    if adjustment is not None:
        topic_score = _adjust_topic_score(topic_score, author, podcast, adjustment)
        format_score = clamp(format_score * adjustment.style_weights.get(podcast.host_style, 1.0))

    overall = clamp(
        topic_score * w["topic"]
        + expertise_score * w["expertise"]
        + style_score * w["style"]
        + audience_score * w["audience"]
        + format_score * w["format"]
    )
    confidence = clamp(min(author.confidence, podcast.confidence))

    return MatchResult(
        author_id=author.author_id,
        podcast_id=podcast.podcast_id,
        overall_score=overall,
        confidence=confidence,
        breakdown=MatchScoreBreakdown(
            topic_score=topic_score,
            expertise_score=expertise_score,
            style_score=style_score,
            audience_score=audience_score,
            format_score=format_score,
            explanation=build_explanation(topic_score, expertise_score, style_score, audience_score),
        ),
        suggested_topics=suggest_topics(author, podcast),
    )


# --- Preference / feature matching ---

def _has_usable_features(features: PodcastFeatures) -> bool:
    style = features.content_style
    return bool(
        features.main_topics
        or style.is_interview or style.is_narrative or style.is_educational or style.is_debate
        or features.complexity_level
        or features.average_episode_length is not None
        or features.production_quality is not None
    )


def calculate_preference_style_score(preferences: UserPreferences, features: PodcastFeatures) -> float:
    """Share of the user's preferred formats that the podcast actually has."""
    wanted = preferences.style_preferences
    style = features.content_style
    pairs = [
        (wanted.is_interview_preferred, style.is_interview),
        (wanted.is_storytelling_preferred, style.is_narrative),
        (wanted.is_educational_preferred, style.is_educational),
        (wanted.is_debate_preferred, style.is_debate),
    ]
    preferred = [present for is_wanted, present in pairs if is_wanted]
    if not preferred:
        return NEUTRAL
    return sum(1 for present in preferred if present) / len(preferred)


def calculate_length_score(preferred_length: Optional[str], average_length: Optional[float]) -> float:
    if preferred_length not in LENGTH_RANGES or average_length is None:
        return NEUTRAL
    low, high = LENGTH_RANGES[preferred_length]
    if average_length < low:
        distance = low - average_length
    elif high is not None and average_length > high:
        distance = average_length - high
    else:
        return 1.0
    return max(0.0, 1.0 - distance / 60.0)


def _feature_completeness(features: PodcastFeatures) -> float:
    style = features.content_style
    populated = [
        bool(features.main_topics),
        any([style.is_interview, style.is_narrative, style.is_educational, style.is_debate]),
        features.complexity_level is not None,
        features.average_episode_length is not None,
        features.production_quality is not None,
    ]
    return sum(populated) / len(populated)


def match_preferences_to_features(
    preferences: UserPreferences,
    features: Optional[PodcastFeatures],
    weights: Optional[PreferenceWeights] = None,
) -> Optional[ScoredMatch]:
    """Scores a podcast's extracted features against a user's declared preferences.

    Returns None when there are no usable features to score.
    """
    if features is None or not _has_usable_features(features):
        return None
    w = _normalized((weights or DEFAULT_PREFERENCE_WEIGHTS).model_dump())

    factors = MatchFactors(
        topic_score=jaccard_similarity(preferences.topics, features.main_topics),
        style_score=calculate_preference_style_score(preferences, features),
        length_score=calculate_length_score(preferences.preferred_length, features.average_episode_length),
        complexity_score=(
            ordinal_score(features.complexity_level, "intermediate", COMPLEXITY_SCALE)
            if features.complexity_level else NEUTRAL
        ),
        quality_score=(
            clamp(features.production_quality / 100.0)
            if features.production_quality is not None else NEUTRAL
        ),
    )
    score = clamp(
        factors.topic_score * w["topic"]
        + factors.style_score * w["style"]
        + factors.length_score * w["length"]
        + factors.complexity_score * w["complexity"]
        + factors.quality_score * w["quality"]
    )

    reasons = []
    if factors.topic_score > 0.5:
        common = [t for t in features.main_topics if normalize_term(t) in normalize_terms(preferences.topics)]
        reasons.append(f"Strong topic match: Covers {', '.join(common)}")
    if factors.style_score > 0.7:
        reasons.append("Content style aligns well with your preferences")
    if preferences.preferred_length and factors.length_score > 0.8:
        reasons.append(f"Episode length matches your preference for {preferences.preferred_length} episodes")
    if factors.quality_score > 0.8:
        reasons.append("High production quality")

    return ScoredMatch(
        podcast_id=features.podcast_id,
        score=score,
        confidence=_feature_completeness(features),
        factors=factors,
        reasons=reasons,
    )
