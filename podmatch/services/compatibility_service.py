import asyncio
import logging
import time
from typing import List, Optional

from ..api.exceptions import DatastoreError, MatchingEngineError, NotFoundError
from ..models.analysis import AuthorAnalysis, PodcastAnalysis, PodcastRecord
from ..models.matching import (
    BatchProcessConfig,
    BatchProcessResult,
    MatchFilter,
    MatchResult,
    MatchWeights,
    PreferenceAdjustment,
    ProcessingStatus,
    ScoredMatch,
)
from ..persistence.repository import MatchRepository
from ..utils.text_utils import normalize_terms
from .analysis_service import AnalysisService
from .error_handler import ErrorHandler
from .metrics_service import MetricsService
from .scoring_service import match_author_to_podcast, match_preferences_to_features

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = BatchProcessConfig()


def _sort_key(match: MatchResult):
    return (-match.overall_score, -match.confidence, match.podcast_id)


async def _cancel_all(tasks: List[asyncio.Task]) -> None:
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


class BatchRunStatus:
    """Owns the ProcessingStatus row of one batch run.

    Writes are serialized, so `processed_count` only ever grows, and once the
    run is marked completed or failed no progress write can overwrite it.
    """

    def __init__(self, repository: MatchRepository, author_id: str):
        self.repository = repository
        self.author_id = author_id
        self.total = 0
        self.processed = 0
        self.finished = False
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        async with self._lock:
            await self._write(ProcessingStatus(author_id=self.author_id, status="processing", progress=0.0))

    async def advance(self) -> None:
        async with self._lock:
            if self.finished:
                return
            self.processed += 1
            await self._write(ProcessingStatus(
                author_id=self.author_id,
                status="processing",
                progress=self.processed / self.total if self.total else 1.0,
                processed_count=self.processed,
                total_candidates=self.total,
            ))

    async def complete(self) -> None:
        async with self._lock:
            if self.finished:
                return
            await self._write(ProcessingStatus(
                author_id=self.author_id,
                status="completed",
                progress=1.0,
                processed_count=self.processed,
                total_candidates=self.total,
            ))
            self.finished = True

    async def fail(self, error: Exception) -> None:
        async with self._lock:
            self.finished = True
            await self._write(ProcessingStatus(
                author_id=self.author_id,
                status="failed",
                progress=self.processed / self.total if self.total else 0.0,
                processed_count=self.processed,
                total_candidates=self.total,
                error=str(error) or type(error).__name__,
            ))

    async def _write(self, status: ProcessingStatus) -> None:
        # A write already handed to the datastore thread lands before the lock is released
        write = asyncio.ensure_future(self.repository.upsert_processing_status(status))
        try:
            await asyncio.shield(write)
        except asyncio.CancelledError:
            await asyncio.wait([write])
            raise


class CompatibilityService:
    """Runs batch matching of one author against the podcast catalog.

    Candidates are analyzed and scored concurrently, bounded by a semaphore
    of `max_concurrent` slots. A candidate that fails yields no match; a
    failure to list candidates or to record progress fails the whole batch.
    """

    def __init__(
        self,
        repository: MatchRepository,
        analysis_service: AnalysisService,
        error_handler: ErrorHandler,
        metrics_service: Optional[MetricsService] = None,
        default_config: Optional[BatchProcessConfig] = None,
        weights: Optional[MatchWeights] = None,
    ):
        self.repository = repository
        self.analysis_service = analysis_service
        self.error_handler = error_handler
        self.metrics_service = metrics_service or MetricsService()
        self.default_config = default_config or DEFAULT_CONFIG
        self.weights = weights

    async def find_matches(
        self,
        author_id: str,
        match_filter: Optional[MatchFilter] = None,
        config: Optional[BatchProcessConfig] = None,
    ) -> BatchProcessResult:
        config = config or self.default_config
        match_filter = match_filter or MatchFilter()
        start = time.perf_counter()
        logger.info(f"Starting batch match for author {author_id} (max_concurrent={config.max_concurrent}).")
        self.metrics_service.record_event("batch_started", author_id=author_id, operation="find_matches")

        run = BatchRunStatus(self.repository, author_id)
        # Status must be writable before any work starts; a failure here propagates
        await run.start()

        try:
            author_analysis = await self.analysis_service.get_author_analysis(author_id)
            candidates = await self._get_candidates(match_filter)
        except Exception as e:
            await self._fail_batch(run, e, start)
            raise

        adjustment = await self._get_adjustment(author_id)
        run.total = len(candidates)
        logger.info(f"Author {author_id}: {run.total} candidate podcasts after filtering.")
        semaphore = asyncio.Semaphore(config.max_concurrent)

        async def process(candidate: PodcastRecord) -> Optional[MatchResult]:
            async with semaphore:
                match = await self._score_candidate(author_id, author_analysis, candidate, match_filter, adjustment)
            await run.advance()
            return match

        tasks = [asyncio.create_task(process(c)) for c in candidates]
        try:
            results = await asyncio.gather(*tasks)
        except DatastoreError as e:
            await _cancel_all(tasks)
            await self._fail_batch(run, e, start)
            raise

        matches = self._apply_result_policy(
            [m for m in results if m is not None],
            min_score=match_filter.min_score if match_filter.min_score is not None else config.min_match_score,
            min_confidence=match_filter.min_confidence if match_filter.min_confidence is not None else config.min_confidence,
            max_results=match_filter.max_results or config.max_results,
        )

        try:
            await self.repository.replace_match_results(author_id, matches)
            await run.complete()
        except DatastoreError as e:
            await self._fail_batch(run, e, start)
            raise

        elapsed_ms = (time.perf_counter() - start) * 1000
        self.metrics_service.record_event(
            "batch_completed", author_id=author_id, operation="find_matches",
            duration_ms=elapsed_ms, metadata={"matches": len(matches), "candidates": run.total},
        )
        logger.info(f"Batch match for author {author_id} completed: {len(matches)} matches from {run.total} candidates in {elapsed_ms:.0f}ms.")
        return BatchProcessResult(
            author_id=author_id,
            matches=matches,
            processed_count=run.processed,
            total_candidates=run.total,
            processing_time_ms=elapsed_ms,
        )

    async def get_processing_status(self, author_id: str) -> ProcessingStatus:
        status = await self.repository.get_processing_status(author_id)
        if status is None:
            raise NotFoundError(f"No batch run recorded for author {author_id}")
        return status

    async def find_preference_matches(self, user_id: str, match_filter: Optional[MatchFilter] = None) -> List[ScoredMatch]:
        """Ranks the catalog against a user's declared topic/style/length preferences."""
        match_filter = match_filter or MatchFilter()
        preferences = await self.repository.get_user_preferences(user_id)
        if preferences is None:
            raise NotFoundError(f"No preferences recorded for user {user_id}")

        candidates = await self._get_candidates(match_filter)
        semaphore = asyncio.Semaphore(self.default_config.max_concurrent)

        async def score(candidate: PodcastRecord) -> Optional[ScoredMatch]:
            async with semaphore:
                try:
                    features = await self.analysis_service.get_podcast_features(candidate.id, user_id=user_id)
                except MatchingEngineError as e:
                    await self.error_handler.report_error(e, "medium", {
                        "user_id": user_id, "podcast_id": candidate.id, "operation": "find_preference_matches",
                    })
                    return None
            return match_preferences_to_features(preferences, features)

        scored = [m for m in await asyncio.gather(*(score(c) for c in candidates)) if m is not None]
        min_score = match_filter.min_score if match_filter.min_score is not None else self.default_config.min_match_score
        min_confidence = match_filter.min_confidence if match_filter.min_confidence is not None else 0.0
        kept = [m for m in scored if m.score >= min_score and m.confidence >= min_confidence]
        kept.sort(key=lambda m: (-m.score, -m.confidence, m.podcast_id))
        return kept[:match_filter.max_results or self.default_config.max_results]

    async def _get_candidates(self, match_filter: MatchFilter) -> List[PodcastRecord]:
        try:
            podcasts = await self.repository.list_podcasts(exclude_ids=match_filter.exclude_podcast_ids)
        except DatastoreError:
            raise
        except Exception as e:
            raise DatastoreError(f"Failed to fetch candidate podcasts: {e}") from e

        required = normalize_terms(match_filter.topics)
        if not required:
            return podcasts
        return [p for p in podcasts if required <= normalize_terms(p.categories)]

    async def _score_candidate(
        self,
        author_id: str,
        author_analysis: AuthorAnalysis,
        candidate: PodcastRecord,
        match_filter: MatchFilter,
        adjustment: Optional[PreferenceAdjustment],
    ) -> Optional[MatchResult]:
        try:
            podcast_analysis: PodcastAnalysis = await self.analysis_service.get_podcast_analysis(candidate.id, user_id=author_id)
            if match_filter.audience_levels and podcast_analysis.audience_level not in match_filter.audience_levels:
                return None
            return match_author_to_podcast(author_analysis, podcast_analysis, self.weights, adjustment)
        except Exception as e:
            # One bad candidate must not sink the batch
            logger.warning(f"Skipping podcast {candidate.id} for author {author_id}: {e}")
            await self.error_handler.report_error(e, "medium", {
                "user_id": author_id, "podcast_id": candidate.id, "operation": "score_candidate",
            })
            self.metrics_service.record_event("candidate_failed", author_id=author_id, operation="find_matches",
                                              metadata={"podcast_id": candidate.id, "error": type(e).__name__})
            return None

    async def _get_adjustment(self, author_id: str) -> Optional[PreferenceAdjustment]:
        try:
            return await self.repository.get_preference_adjustment(author_id)
        except DatastoreError as e:
            logger.warning(f"Scoring author {author_id} without preference weights: {e}")
            return None

    async def _fail_batch(self, run: BatchRunStatus, error: Exception, start: float) -> None:
        author_id = run.author_id
        await self.error_handler.report_error(error, "high", {"user_id": author_id, "operation": "find_matches"})
        self.metrics_service.record_event(
            "batch_failed", author_id=author_id, operation="find_matches",
            duration_ms=(time.perf_counter() - start) * 1000, metadata={"error": type(error).__name__},
        )
        try:
            await run.fail(error)
        except DatastoreError as e:
            logger.error(f"Could not mark batch for author {author_id} as failed: {e}")

    @staticmethod
    def _apply_result_policy(
        matches: List[MatchResult],
        min_score: float,
        min_confidence: float,
        max_results: int,
    ) -> List[MatchResult]:
        """Filter by thresholds, sort best first, truncate, then number the survivors."""
        kept = [m for m in matches if m.overall_score >= min_score and m.confidence >= min_confidence]
        kept.sort(key=_sort_key)
        return [m.model_copy(update={"rank": i}) for i, m in enumerate(kept[:max_results], start=1)]
