"""Resilience layer: retry with backoff, error reporting, fallback recommendations."""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type, TypeVar, Union

from ..models.analysis import PodcastRecord
from ..models.error_report import ErrorContext, ErrorReport, ErrorSeverity
from ..persistence.repository import MatchRepository
from ..utils.text_utils import normalize_term, normalize_terms

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_RETRIES = 3
RETRY_BASE_DELAY = 1.0  # seconds; doubles after every failed attempt
FALLBACK_LIMIT = 10

SEVERITY_LOG_LEVELS = {
    "low": logging.INFO,
    "medium": logging.WARNING,
    "high": logging.ERROR,
    "critical": logging.CRITICAL,
}

ContextLike = Union[ErrorContext, Dict[str, Any], None]


def _as_context(context: ContextLike) -> ErrorContext:
    if context is None:
        return ErrorContext()
    if isinstance(context, ErrorContext):
        return context
    return ErrorContext.model_validate(context)


class ErrorHandler:
    """Shared by every component that talks to the LLM or the datastore."""

    def __init__(
        self,
        repository: Optional[MatchRepository] = None,
        max_retries: int = MAX_RETRIES,
        base_delay: float = RETRY_BASE_DELAY,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        if max_retries < 1:
            raise ValueError("max_retries must be at least 1")
        self.repository = repository
        self.max_retries = max_retries
        self.base_delay = base_delay
        self._sleep = sleep or asyncio.sleep

    async def report_error(self, error: BaseException, severity: ErrorSeverity = "medium", context: ContextLike = None) -> ErrorReport:
        """Logs and persists an error. Never raises: a reporting failure is only logged."""
        ctx = _as_context(context)
        report = ErrorReport(
            error_type=type(error).__name__,
            message=str(error) or repr(error),
            severity=severity,
            context=ctx,
        )
        logger.log(
            SEVERITY_LOG_LEVELS.get(severity, logging.ERROR),
            f"[{severity}] {report.error_type} during '{ctx.operation or 'unknown'}'"
            f" (user={ctx.user_id}, attempt={ctx.attempt}): {report.message}",
        )
        if severity == "critical":
            self._notify_admin(report)

        if self.repository is not None:
            try:
                await self.repository.insert_error_log(report)
            except Exception as e:
                logger.error(f"Failed to persist error report for {report.error_type}: {e}")
        return report

    def _notify_admin(self, report: ErrorReport) -> None:
        # Picked up by the alerting handler attached to this logger
        logger.critical(
            f"ADMIN NOTIFICATION: critical {report.error_type} in '{report.context.operation}': {report.message}",
            extra={"notify_admin": True, "error_report": report.model_dump(mode="json")},
        )

    async def with_retry(
        self,
        operation: Callable[[], Awaitable[T]],
        context: ContextLike = None,
        retry_on: Tuple[Type[BaseException], ...] = (Exception,),
    ) -> T:
        """Awaits `operation()` up to `max_retries` times with exponential backoff.

        Each failed attempt is reported at low severity. When the last attempt
        fails the error is reported at high severity and re-raised unchanged.
        Exceptions outside `retry_on` propagate immediately.
        """
        ctx = _as_context(context)
        for attempt in range(1, self.max_retries + 1):
            try:
                return await operation()
            except retry_on as e:
                attempt_ctx = ctx.model_copy(update={"attempt": attempt})
                if attempt >= self.max_retries:
                    await self.report_error(e, "high", attempt_ctx)
                    raise
                await self.report_error(e, "low", attempt_ctx)
                delay = self.base_delay * (2 ** (attempt - 1))
                retry_after = getattr(e, "retry_after", None)
                if retry_after:
                    delay = max(delay, float(retry_after))
                logger.warning(f"Attempt {attempt}/{self.max_retries} of '{ctx.operation}' failed. Retrying in {delay}s...")
                await self._sleep(delay)
        raise RuntimeError("unreachable")  # pragma: no cover

    async def get_fallback_recommendations(self, user_id: str, limit: int = FALLBACK_LIMIT) -> List[PodcastRecord]:
        """Degraded recommendations for when primary matching fails. Never raises.

        Tries podcasts matching the user's learned topic weights, then the
        highest rated podcasts overall, then gives up with an empty list.
        """
        try:
            podcasts = await self._topic_weighted_podcasts(user_id, limit)
            if podcasts:
                logger.info(f"Fallback for user {user_id}: {len(podcasts)} podcasts from topic weights.")
                return podcasts
        except Exception as e:
            await self.report_error(e, "medium", {"user_id": user_id, "operation": "fallback_topic_weights"})

        try:
            if self.repository is not None:
                podcasts = await self.repository.top_rated_podcasts(limit)
                if podcasts:
                    logger.info(f"Fallback for user {user_id}: {len(podcasts)} popular podcasts.")
                    return podcasts
        except Exception as e:
            await self.report_error(e, "medium", {"user_id": user_id, "operation": "fallback_popular"})

        logger.warning(f"No fallback recommendations available for user {user_id}.")
        return []

    async def _topic_weighted_podcasts(self, user_id: str, limit: int) -> List[PodcastRecord]:
        if self.repository is None:
            return []
        adjustment = await self.repository.get_preference_adjustment(user_id)
        if adjustment is None:
            return []
        weights = {normalize_term(topic): w for topic, w in adjustment.topic_weights.items() if w > 0}
        weights.pop("", None)
        if not weights:
            return []

        scored = []
        for podcast in await self.repository.list_podcasts():
            topic_weight = sum(weights.get(c, 0.0) for c in normalize_terms(podcast.categories))
            if topic_weight > 0:
                scored.append((topic_weight, podcast))
        scored.sort(key=lambda item: (-item[0], -(item[1].rating or 0.0), item[1].id))
        return [podcast for _, podcast in scored[:limit]]
