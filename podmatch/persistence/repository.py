"""Async data access for the matching engine.

SQLAlchemy sessions are blocking, so every operation runs in a worker thread
via `asyncio.to_thread`; callers simply await. Any `SQLAlchemyError` is
rolled back and re-raised as `DatastoreError` so the services never see
driver-specific exceptions.
"""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, List, Optional, TypeVar

from sqlalchemy import delete, func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..api.exceptions import DatastoreError
from ..models.analysis import AuthorAnalysis, AuthorProfile, PodcastAnalysis, PodcastRecord
from ..models.cache import CacheEntry
from ..models.error_report import ErrorReport
from ..models.matching import (
    MatchResult,
    PreferenceAdjustment,
    ProcessingStatus,
    UserPreferences,
)
from .postgresql import (
    Author,
    AuthorAnalysisRow,
    CacheEntryRow,
    ErrorLogRow,
    MatchResultRow,
    Podcast,
    PodcastAnalysisRow,
    PreferenceAdjustmentRow,
    ProcessingStatusRow,
    SessionFactory,
    UserPreferencesRow,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo on the way back; treat naive timestamps as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _podcast_from_row(row: Podcast) -> PodcastRecord:
    return PodcastRecord(
        id=row.id,
        title=row.title,
        description=row.description,
        publisher=row.publisher,
        categories=list(row.categories or []),
        average_episode_length=row.average_episode_length,
        total_episodes=row.total_episodes,
        language=row.language,
        format=row.format,
        rating=row.rating,
    )


class MatchRepository:
    """Select/filter/upsert/delete access to every table the engine touches."""

    def __init__(self, session_factory: SessionFactory):
        self._session_factory = session_factory

    def _execute(self, operation: str, work: Callable[[Session], R]) -> R:
        session = self._session_factory()
        try:
            result = work(session)
            session.commit()
            return result
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Datastore operation '{operation}' failed: {e}")
            raise DatastoreError(f"Datastore operation '{operation}' failed: {e}") from e
        finally:
            session.close()

    async def _run(self, operation: str, work: Callable[[Session], R]) -> R:
        return await asyncio.to_thread(self._execute, operation, work)

    # --- Subject entities --- #

    async def get_author(self, author_id: str) -> Optional[AuthorProfile]:
        def work(session: Session) -> Optional[AuthorProfile]:
            row = session.get(Author, author_id)
            if row is None:
                return None
            return AuthorProfile(id=row.id, name=row.name, bio=row.bio, books=row.books or [])
        return await self._run("get_author", work)

    async def upsert_author(self, author: AuthorProfile) -> None:
        def work(session: Session) -> None:
            session.merge(Author(
                id=author.id,
                name=author.name,
                bio=author.bio,
                books=[book.model_dump(mode="json") for book in author.books],
            ))
        await self._run("upsert_author", work)

    async def get_podcast(self, podcast_id: str) -> Optional[PodcastRecord]:
        def work(session: Session) -> Optional[PodcastRecord]:
            row = session.get(Podcast, podcast_id)
            return _podcast_from_row(row) if row is not None else None
        return await self._run("get_podcast", work)

    async def upsert_podcast(self, podcast: PodcastRecord) -> None:
        def work(session: Session) -> None:
            session.merge(Podcast(**podcast.model_dump(mode="json")))
        await self._run("upsert_podcast", work)

    async def list_podcasts(self, exclude_ids: Optional[Iterable[str]] = None) -> List[PodcastRecord]:
        """Returns the candidate pool, minus any excluded ids, in id order."""
        excluded = list(exclude_ids or [])

        def work(session: Session) -> List[PodcastRecord]:
            stmt = select(Podcast).order_by(Podcast.id)
            if excluded:
                stmt = stmt.where(Podcast.id.not_in(excluded))
            return [_podcast_from_row(row) for row in session.scalars(stmt)]
        return await self._run("list_podcasts", work)

    async def top_rated_podcasts(self, limit: int = 10) -> List[PodcastRecord]:
        def work(session: Session) -> List[PodcastRecord]:
            stmt = (
                select(Podcast)
                .where(Podcast.rating.is_not(None))
                .order_by(Podcast.rating.desc(), Podcast.id)
                .limit(limit)
            )
            return [_podcast_from_row(row) for row in session.scalars(stmt)]
        return await self._run("top_rated_podcasts", work)

    # --- Analyses --- #

    async def get_author_analysis(self, author_id: str) -> Optional[AuthorAnalysis]:
        def work(session: Session) -> Optional[AuthorAnalysis]:
            row = session.get(AuthorAnalysisRow, author_id)
            if row is None:
                return None
            return AuthorAnalysis.model_validate({**row.analysis, "last_analyzed": as_utc(row.last_analyzed)})
        return await self._run("get_author_analysis", work)

    async def save_author_analysis(self, analysis: AuthorAnalysis) -> None:
        def work(session: Session) -> None:
            session.merge(AuthorAnalysisRow(
                author_id=analysis.author_id,
                analysis=analysis.model_dump(mode="json"),
                last_analyzed=analysis.last_analyzed,
            ))
        await self._run("save_author_analysis", work)

    async def get_podcast_analysis(self, podcast_id: str) -> Optional[PodcastAnalysis]:
        def work(session: Session) -> Optional[PodcastAnalysis]:
            row = session.get(PodcastAnalysisRow, podcast_id)
            if row is None:
                return None
            return PodcastAnalysis.model_validate({**row.analysis, "last_analyzed": as_utc(row.last_analyzed)})
        return await self._run("get_podcast_analysis", work)

    async def save_podcast_analysis(self, analysis: PodcastAnalysis) -> None:
        def work(session: Session) -> None:
            session.merge(PodcastAnalysisRow(
                podcast_id=analysis.podcast_id,
                analysis=analysis.model_dump(mode="json"),
                last_analyzed=analysis.last_analyzed,
            ))
        await self._run("save_podcast_analysis", work)

    # --- Generic keyed cache --- #

    async def get_cache_entry(self, key: str) -> Optional[CacheEntry[Any]]:
        def work(session: Session) -> Optional[CacheEntry[Any]]:
            row = session.get(CacheEntryRow, key)
            if row is None:
                return None
            return CacheEntry[Any](
                key=row.key,
                value=row.value,
                timestamp=as_utc(row.timestamp),
                expires_at=as_utc(row.expires_at),
                usage_count=row.usage_count or 0,
            )
        return await self._run("get_cache_entry", work)

    async def put_cache_entry(self, entry: CacheEntry[Any]) -> None:
        def work(session: Session) -> None:
            session.merge(CacheEntryRow(
                key=entry.key,
                value=entry.value,
                timestamp=entry.timestamp,
                expires_at=entry.expires_at,
                usage_count=entry.usage_count,
            ))
        await self._run("put_cache_entry", work)

    async def increment_cache_usage(self, key: str) -> None:
        def work(session: Session) -> None:
            row = session.get(CacheEntryRow, key)
            if row is not None:
                row.usage_count = (row.usage_count or 0) + 1
        await self._run("increment_cache_usage", work)

    async def delete_cache_entry(self, key: str) -> bool:
        def work(session: Session) -> bool:
            result = session.execute(delete(CacheEntryRow).where(CacheEntryRow.key == key))
            return (result.rowcount or 0) > 0
        return await self._run("delete_cache_entry", work)

    async def delete_expired_cache_entries(self, now: datetime) -> int:
        def work(session: Session) -> int:
            result = session.execute(delete(CacheEntryRow).where(CacheEntryRow.expires_at <= now))
            return result.rowcount or 0
        return await self._run("delete_expired_cache_entries", work)

    async def count_cache_entries(self) -> int:
        def work(session: Session) -> int:
            return session.scalar(select(func.count()).select_from(CacheEntryRow)) or 0
        return await self._run("count_cache_entries", work)

    # --- Match results and batch status --- #

    async def replace_match_results(self, author_id: str, matches: List[MatchResult]) -> None:
        """Drops the author's previous results and stores the new ranked set."""
        created_at = datetime.now(timezone.utc)

        def work(session: Session) -> None:
            session.execute(delete(MatchResultRow).where(MatchResultRow.author_id == author_id))
            session.add_all([
                MatchResultRow(
                    author_id=author_id,
                    podcast_id=match.podcast_id,
                    overall_score=match.overall_score,
                    confidence=match.confidence,
                    rank=match.rank,
                    result=match.model_dump(mode="json"),
                    created_at=created_at,
                )
                for match in matches
            ])
        await self._run("replace_match_results", work)

    async def get_match_results(self, author_id: str) -> List[MatchResult]:
        def work(session: Session) -> List[MatchResult]:
            stmt = (
                select(MatchResultRow)
                .where(MatchResultRow.author_id == author_id)
                .order_by(MatchResultRow.rank, MatchResultRow.id)
            )
            return [MatchResult.model_validate(row.result) for row in session.scalars(stmt)]
        return await self._run("get_match_results", work)

    async def upsert_processing_status(self, status: ProcessingStatus) -> None:
        def work(session: Session) -> None:
            session.merge(ProcessingStatusRow(**status.model_dump()))
        await self._run("upsert_processing_status", work)

    async def get_processing_status(self, author_id: str) -> Optional[ProcessingStatus]:
        def work(session: Session) -> Optional[ProcessingStatus]:
            row = session.get(ProcessingStatusRow, author_id)
            if row is None:
                return None
            return ProcessingStatus(
                author_id=row.author_id,
                status=row.status,
                progress=row.progress,
                processed_count=row.processed_count,
                total_candidates=row.total_candidates,
                error=row.error,
                updated_at=as_utc(row.updated_at),
            )
        return await self._run("get_processing_status", work)

    # --- Error log --- #

    async def insert_error_log(self, report: ErrorReport) -> None:
        def work(session: Session) -> None:
            session.add(ErrorLogRow(
                timestamp=report.timestamp,
                error_type=report.error_type,
                message=report.message,
                severity=report.severity,
                context=report.context.model_dump(mode="json"),
            ))
        await self._run("insert_error_log", work)

    async def list_error_logs(self, severity: Optional[str] = None) -> List[ErrorReport]:
        def work(session: Session) -> List[ErrorReport]:
            stmt = select(ErrorLogRow).order_by(ErrorLogRow.id)
            if severity:
                stmt = stmt.where(ErrorLogRow.severity == severity)
            return [
                ErrorReport(
                    error_type=row.error_type,
                    message=row.message,
                    severity=row.severity,
                    context=row.context or {},
                    timestamp=as_utc(row.timestamp),
                )
                for row in session.scalars(stmt)
            ]
        return await self._run("list_error_logs", work)

    # --- User preferences (owned by the surrounding application) --- #

    async def get_user_preferences(self, user_id: str) -> Optional[UserPreferences]:
        def work(session: Session) -> Optional[UserPreferences]:
            row = session.get(UserPreferencesRow, user_id)
            if row is None:
                return None
            return UserPreferences(
                user_id=row.user_id,
                topics=row.topics or [],
                preferred_length=row.preferred_length,
                style_preferences=row.style_preferences or {},
            )
        return await self._run("get_user_preferences", work)

    async def upsert_user_preferences(self, preferences: UserPreferences) -> None:
        def work(session: Session) -> None:
            data = preferences.model_dump(mode="json")
            session.merge(UserPreferencesRow(**data))
        await self._run("upsert_user_preferences", work)

    async def get_preference_adjustment(self, user_id: str) -> Optional[PreferenceAdjustment]:
        def work(session: Session) -> Optional[PreferenceAdjustment]:
            row = session.get(PreferenceAdjustmentRow, user_id)
            if row is None:
                return None
            return PreferenceAdjustment(
                user_id=row.user_id,
                topic_weights=row.topic_weights or {},
                style_weights=row.style_weights or {},
                last_adjusted=as_utc(row.last_adjusted),
            )
        return await self._run("get_preference_adjustment", work)

    async def upsert_preference_adjustment(self, adjustment: PreferenceAdjustment) -> None:
        def work(session: Session) -> None:
            session.merge(PreferenceAdjustmentRow(
                user_id=adjustment.user_id,
                topic_weights=adjustment.topic_weights,
                style_weights=adjustment.style_weights,
                last_adjusted=adjustment.last_adjusted,
            ))
        await self._run("upsert_preference_adjustment", work)
