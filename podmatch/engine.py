"""Composition root: builds the engine's collaborators from `Settings`.

Nothing in the package holds module-level clients; everything is created
here and passed down explicitly, so tests can swap any piece.
"""
import logging
from datetime import timedelta
from typing import List, Optional, Union

from langchain_core.language_models.chat_models import BaseChatModel

from .api.llm_gateway import LLMGateway, build_chat_model
from .api.rate_limiter import SlidingWindowRateLimiter
from .config import Settings
from .models.analysis import AuthorAnalysis, PodcastAnalysis, PodcastFeatures, PodcastRecord
from .models.matching import BatchProcessConfig, BatchProcessResult, MatchFilter, ProcessingStatus, ScoredMatch
from .persistence.postgresql import SessionFactory, create_db_engine, create_session_factory, create_tables
from .persistence.repository import MatchRepository
from .services.analysis_service import AnalysisService
from .services.cache_service import CacheBackend, CacheStore, DatabaseCacheBackend, MemoryCacheBackend
from .services.compatibility_service import CompatibilityService
from .services.error_handler import ErrorHandler
from .services.metrics_service import MetricsService

logger = logging.getLogger(__name__)


class MatchingEngine:
    """Caller-facing API of the compatibility matching engine."""

    def __init__(
        self,
        repository: MatchRepository,
        analysis_service: AnalysisService,
        compatibility_service: CompatibilityService,
        error_handler: ErrorHandler,
        response_cache: Optional[CacheStore[str]] = None,
    ):
        self.repository = repository
        self.analysis_service = analysis_service
        self.compatibility_service = compatibility_service
        self.error_handler = error_handler
        self.response_cache = response_cache

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        llm: Optional[BaseChatModel] = None,
        session_factory: Optional[SessionFactory] = None,
        create_schema: bool = False,
    ) -> "MatchingEngine":
        if session_factory is None:
            db_engine = create_db_engine(settings.DATABASE_URL)
            if create_schema:
                create_tables(db_engine)
            session_factory = create_session_factory(db_engine)
        repository = MatchRepository(session_factory)

        backend: CacheBackend
        if settings.CACHE_BACKEND == "memory":
            backend = MemoryCacheBackend(maxsize=settings.CACHE_MAX_ENTRIES)
        else:
            backend = DatabaseCacheBackend(repository)
        response_cache: CacheStore[str] = CacheStore(
            backend, str, namespace="llm", default_ttl=timedelta(seconds=settings.CACHE_TTL_SECONDS),
        )
        features_cache: CacheStore[PodcastFeatures] = CacheStore(
            backend, PodcastFeatures, namespace="features", default_ttl=timedelta(days=settings.PODCAST_STALENESS_DAYS),
        )

        error_handler = ErrorHandler(
            repository=repository,
            max_retries=settings.MAX_RETRIES,
            base_delay=settings.RETRY_BASE_DELAY,
        )
        gateway = LLMGateway(
            llm=llm or build_chat_model(settings),
            rate_limiter=SlidingWindowRateLimiter(settings.RATE_LIMIT_REQUESTS, settings.RATE_LIMIT_WINDOW_SECONDS),
            error_handler=error_handler,
            cache=response_cache,
            model_name=settings.GEMINI_MODEL,
            temperature=settings.LLM_TEMPERATURE,
        )
        analysis_service = AnalysisService(
            repository=repository,
            gateway=gateway,
            features_cache=features_cache,
            author_staleness=timedelta(days=settings.AUTHOR_STALENESS_DAYS),
            podcast_staleness=timedelta(days=settings.PODCAST_STALENESS_DAYS),
        )
        compatibility_service = CompatibilityService(
            repository=repository,
            analysis_service=analysis_service,
            error_handler=error_handler,
            metrics_service=MetricsService(),
            default_config=BatchProcessConfig(
                max_concurrent=settings.BATCH_MAX_CONCURRENT,
                min_match_score=settings.BATCH_MIN_MATCH_SCORE,
                min_confidence=settings.BATCH_MIN_CONFIDENCE,
                max_results=settings.BATCH_MAX_RESULTS,
            ),
        )
        logger.info("Matching engine initialized.")
        return cls(repository, analysis_service, compatibility_service, error_handler, response_cache)

    async def find_matches(
        self,
        author_id: str,
        match_filter: Optional[MatchFilter] = None,
        config: Optional[BatchProcessConfig] = None,
    ) -> BatchProcessResult:
        return await self.compatibility_service.find_matches(author_id, match_filter, config)

    async def get_analysis(self, entity_id: str, entity_type: str = "podcast") -> Union[AuthorAnalysis, PodcastAnalysis]:
        return await self.analysis_service.get_analysis(entity_id, entity_type)

    async def get_fallback_recommendations(self, user_id: str) -> List[PodcastRecord]:
        return await self.error_handler.get_fallback_recommendations(user_id)

    async def get_processing_status(self, author_id: str) -> ProcessingStatus:
        return await self.compatibility_service.get_processing_status(author_id)

    async def find_preference_matches(self, user_id: str, match_filter: Optional[MatchFilter] = None) -> List[ScoredMatch]:
        return await self.compatibility_service.find_preference_matches(user_id, match_filter)

    async def purge_expired_cache(self) -> int:
        if self.response_cache is None:
            return 0
        return await self.response_cache.purge_expired()
