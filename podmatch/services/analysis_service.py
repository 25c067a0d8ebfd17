import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Union

from ..api.exceptions import AnalysisError, CacheError, NotFoundError
from ..api.llm_gateway import LLMGateway
from ..models.analysis import AuthorAnalysis, PodcastAnalysis, PodcastFeatures
from ..models.llm_outputs import (
    LLMAuthorAnalysis,
    LLMPodcastAnalysis,
    LLMPodcastFeatures,
    parse_llm_json,
)
from ..persistence.repository import MatchRepository
from .cache_service import CacheStore
from .prompts import (
    build_author_analysis_messages,
    build_feature_extraction_messages,
    build_podcast_analysis_messages,
)

logger = logging.getLogger(__name__)

AUTHOR_STALENESS = timedelta(days=7)
PODCAST_STALENESS = timedelta(days=30)

Analysis = Union[AuthorAnalysis, PodcastAnalysis]


def is_fresh(last_analyzed: Optional[datetime], window: timedelta, now: datetime) -> bool:
    return last_analyzed is not None and now - last_analyzed < window


class AnalysisService:
    """Serves author and podcast analyses, regenerating them once they go stale.

    A stored analysis younger than its staleness window is returned as is.
    Otherwise the subject is re-analyzed through the LLM gateway and the new
    analysis replaces the stored one.
    """

    def __init__(
        self,
        repository: MatchRepository,
        gateway: LLMGateway,
        features_cache: Optional[CacheStore[PodcastFeatures]] = None,
        author_staleness: timedelta = AUTHOR_STALENESS,
        podcast_staleness: timedelta = PODCAST_STALENESS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.repository = repository
        self.gateway = gateway
        self.features_cache = features_cache
        self.author_staleness = author_staleness
        self.podcast_staleness = podcast_staleness
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    async def get_analysis(self, entity_id: str, entity_type: str = "podcast") -> Analysis:
        if entity_type == "author":
            return await self.get_author_analysis(entity_id)
        if entity_type == "podcast":
            return await self.get_podcast_analysis(entity_id)
        raise ValueError(f"Unknown entity type '{entity_type}'; expected 'author' or 'podcast'")

    async def get_author_analysis(self, author_id: str, user_id: Optional[str] = None) -> AuthorAnalysis:
        author = await self.repository.get_author(author_id)
        if author is None:
            raise NotFoundError(f"Author {author_id} not found")

        stored = await self.repository.get_author_analysis(author_id)
        now = self._clock()
        if stored is not None and is_fresh(stored.last_analyzed, self.author_staleness, now):
            logger.debug(f"Using stored analysis for author {author_id} from {stored.last_analyzed}.")
            return stored

        logger.info(f"Analyzing author {author_id} ({'stale analysis' if stored else 'no prior analysis'}).")
        messages = build_author_analysis_messages(author)
        text = await self.gateway.complete(
            messages,
            user_id=user_id or author_id,
            operation="author_analysis",
        )
        parsed = parse_llm_json(text, LLMAuthorAnalysis)
        if not parsed.ok:
            await self.gateway.invalidate(messages)
            raise AnalysisError(f"Could not parse analysis for author {author_id}: {parsed.error}", raw_response=parsed.raw)

        analysis = parsed.value.to_analysis(author_id, now)
        await self.repository.save_author_analysis(analysis)
        return analysis

    async def get_podcast_analysis(self, podcast_id: str, user_id: Optional[str] = None) -> PodcastAnalysis:
        podcast = await self.repository.get_podcast(podcast_id)
        if podcast is None:
            raise NotFoundError(f"Podcast {podcast_id} not found")

        stored = await self.repository.get_podcast_analysis(podcast_id)
        now = self._clock()
        if stored is not None and is_fresh(stored.last_analyzed, self.podcast_staleness, now):
            logger.debug(f"Using stored analysis for podcast {podcast_id} from {stored.last_analyzed}.")
            return stored

        logger.info(f"Analyzing podcast {podcast_id} ({'stale analysis' if stored else 'no prior analysis'}).")
        messages = build_podcast_analysis_messages(podcast)
        text = await self.gateway.complete(
            messages,
            user_id=user_id,
            operation="podcast_analysis",
        )
        parsed = parse_llm_json(text, LLMPodcastAnalysis)
        if not parsed.ok:
            await self.gateway.invalidate(messages)
            raise AnalysisError(f"Could not parse analysis for podcast {podcast_id}: {parsed.error}", raw_response=parsed.raw)

        analysis = parsed.value.to_analysis(podcast_id, now)
        await self.repository.save_podcast_analysis(analysis)
        return analysis

    async def get_podcast_features(self, podcast_id: str, user_id: Optional[str] = None) -> PodcastFeatures:
        """Content features for preference matching, cached for the podcast staleness window."""
        podcast = await self.repository.get_podcast(podcast_id)
        if podcast is None:
            raise NotFoundError(f"Podcast {podcast_id} not found")

        key_parts = {"podcast_id": podcast_id}
        if self.features_cache is not None:
            try:
                cached = await self.features_cache.get(key_parts)
            except CacheError as e:
                logger.warning(f"Feature cache read failed for podcast {podcast_id}: {e}")
                cached = None
            if cached is not None:
                return cached

        messages = build_feature_extraction_messages(podcast)
        text = await self.gateway.complete(
            messages,
            user_id=user_id,
            operation="feature_extraction",
        )
        parsed = parse_llm_json(text, LLMPodcastFeatures)
        if not parsed.ok:
            await self.gateway.invalidate(messages)
            raise AnalysisError(
                f"Could not extract features for podcast {podcast_id}: {parsed.error}",
                code="EXTRACTION_ERROR",
                raw_response=parsed.raw,
            )

        features = parsed.value.to_features(podcast_id, podcast.average_episode_length)
        if self.features_cache is not None:
            try:
                await self.features_cache.set(key_parts, features, ttl=self.podcast_staleness)
            except CacheError as e:
                logger.warning(f"Failed to cache features for podcast {podcast_id}: {e}")
        return features
