import asyncio
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import inspect

from podmatch.api.exceptions import DatastoreError
from podmatch.models.analysis import (
    AuthorAnalysis,
    AuthorProfile,
    BookInfo,
    GuestRequirements,
    PodcastAnalysis,
    PodcastRecord,
)
from podmatch.models.cache import CacheEntry
from podmatch.models.matching import (
    MatchResult,
    MatchScoreBreakdown,
    PreferenceAdjustment,
    ProcessingStatus,
    StylePreferences,
    UserPreferences,
)
from podmatch.persistence.postgresql import create_db_engine, create_session_factory
from podmatch.persistence.repository import MatchRepository

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


def make_match(podcast_id, score, rank):
    breakdown = MatchScoreBreakdown(
        topic_score=score, expertise_score=score, style_score=score, audience_score=score, format_score=score,
    )
    return MatchResult(
        author_id="author1", podcast_id=podcast_id, overall_score=score, confidence=0.8, breakdown=breakdown, rank=rank,
    )


def test_tables_are_created(db_engine):
    tables = set(inspect(db_engine).get_table_names())
    assert {"authors", "podcasts", "cache_entries"} <= tables


def test_author_round_trip(repository):
    author = AuthorProfile(id="a1", name="Jane", bio="Writer", books=[BookInfo(title="Book", genre=["tech"])])
    asyncio.run(repository.upsert_author(author))

    assert asyncio.run(repository.get_author("a1")) == author
    assert asyncio.run(repository.get_author("missing")) is None


def test_podcast_upsert_overwrites(repository):
    asyncio.run(repository.upsert_podcast(PodcastRecord(id="p1", title="Old", rating=3.0)))
    asyncio.run(repository.upsert_podcast(PodcastRecord(id="p1", title="New", categories=["tech"], format="interview")))

    podcast = asyncio.run(repository.get_podcast("p1"))
    assert podcast.title == "New"
    assert podcast.categories == ["tech"]
    assert podcast.format == "interview"
    assert podcast.rating is None


def test_list_podcasts_excludes_ids(repository):
    for pid in ["c", "a", "b"]:
        asyncio.run(repository.upsert_podcast(PodcastRecord(id=pid, title=pid)))

    assert [p.id for p in asyncio.run(repository.list_podcasts())] == ["a", "b", "c"]
    assert [p.id for p in asyncio.run(repository.list_podcasts(exclude_ids=["b"]))] == ["a", "c"]


def test_top_rated_orders_by_rating_then_id(repository):
    for pid, rating in [("b", 4.0), ("a", 4.0), ("c", 5.0), ("d", None)]:
        asyncio.run(repository.upsert_podcast(PodcastRecord(id=pid, title=pid, rating=rating)))

    assert [p.id for p in asyncio.run(repository.top_rated_podcasts(limit=2))] == ["c", "a"]
    assert [p.id for p in asyncio.run(repository.top_rated_podcasts())] == ["c", "a", "b"]


def test_analyses_round_trip_with_timezone(repository):
    author = AuthorAnalysis(author_id="a1", topics=["ai"], expertise_level="lead",
                            communication_style="academic", last_analyzed=T0)
    podcast = PodcastAnalysis(
        podcast_id="p1", host_style="debate", audience_level="mixed",
        guest_requirements=GuestRequirements(minimum_expertise="expert"), last_analyzed=T0,
    )
    asyncio.run(repository.save_author_analysis(author))
    asyncio.run(repository.save_podcast_analysis(podcast))

    stored_author = asyncio.run(repository.get_author_analysis("a1"))
    stored_podcast = asyncio.run(repository.get_podcast_analysis("p1"))

    assert stored_author == author
    assert stored_podcast == podcast
    assert stored_author.last_analyzed.tzinfo is not None


def test_cache_entries(repository):
    fresh = CacheEntry(key="k1", value={"text": "hi"}, timestamp=T0, expires_at=T0 + timedelta(hours=1))
    stale = CacheEntry(key="k2", value="old", timestamp=T0, expires_at=T0 + timedelta(minutes=1))
    asyncio.run(repository.put_cache_entry(fresh))
    asyncio.run(repository.put_cache_entry(stale))
    asyncio.run(repository.increment_cache_usage("k1"))

    entry = asyncio.run(repository.get_cache_entry("k1"))
    assert entry.value == {"text": "hi"}
    assert entry.usage_count == 1
    assert entry.expires_at == fresh.expires_at

    assert asyncio.run(repository.delete_expired_cache_entries(T0 + timedelta(minutes=30))) == 1
    assert asyncio.run(repository.count_cache_entries()) == 1
    assert asyncio.run(repository.delete_cache_entry("k1")) is True
    assert asyncio.run(repository.delete_cache_entry("k1")) is False


def test_replace_match_results_drops_previous_set(repository):
    asyncio.run(repository.replace_match_results("author1", [make_match("p1", 0.9, 1), make_match("p2", 0.8, 2)]))
    asyncio.run(repository.replace_match_results("author1", [make_match("p3", 0.7, 1)]))

    stored = asyncio.run(repository.get_match_results("author1"))
    assert [(m.podcast_id, m.rank) for m in stored] == [("p3", 1)]


def test_processing_status_upsert(repository):
    asyncio.run(repository.upsert_processing_status(ProcessingStatus(author_id="a1", status="processing")))
    asyncio.run(repository.upsert_processing_status(ProcessingStatus(
        author_id="a1", status="completed", progress=1.0, processed_count=3, total_candidates=3,
    )))

    status = asyncio.run(repository.get_processing_status("a1"))
    assert status.status == "completed"
    assert status.processed_count == 3
    assert asyncio.run(repository.get_processing_status("a2")) is None


def test_preferences_round_trip(repository):
    prefs = UserPreferences(user_id="u1", topics=["history"], preferred_length="long",
                            style_preferences=StylePreferences(is_debate_preferred=True))
    adjustment = PreferenceAdjustment(user_id="u1", topic_weights={"history": 0.7},
                                      style_weights={"debate": 1.2}, last_adjusted=T0)
    asyncio.run(repository.upsert_user_preferences(prefs))
    asyncio.run(repository.upsert_preference_adjustment(adjustment))

    assert asyncio.run(repository.get_user_preferences("u1")) == prefs
    assert asyncio.run(repository.get_preference_adjustment("u1")) == adjustment


def test_missing_schema_raises_datastore_error(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    repository = MatchRepository(create_session_factory(engine))

    with pytest.raises(DatastoreError):
        asyncio.run(repository.list_podcasts())
    engine.dispose()
