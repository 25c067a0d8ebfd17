import asyncio
import json
import re
from unittest.mock import AsyncMock, patch

import pytest

from podmatch.api.exceptions import DatastoreError, NotFoundError
from podmatch.models.analysis import AuthorProfile, PodcastRecord
from podmatch.models.matching import BatchProcessConfig, MatchFilter, StylePreferences, UserPreferences
from podmatch.services.analysis_service import AnalysisService
from podmatch.services.compatibility_service import CompatibilityService
from podmatch.services.error_handler import ErrorHandler
from podmatch.services.metrics_service import MetricsService

TITLE_RE = re.compile(r"^Title: (.+)$", re.MULTILINE)

FEATURES_JSON = json.dumps({
    "mainTopics": ["technology", "startups"],
    "contentStyle": {"isInterview": True},
    "complexityLevel": "intermediate",
    "productionQuality": 90,
})


class FakeGateway:
    """Answers completions by operation, and podcast prompts by the title they carry."""

    def __init__(self, author_reply, podcast_replies, delay=0.0):
        self.author_reply = author_reply
        self.podcast_replies = podcast_replies
        self.delay = delay
        self.in_flight = 0
        self.max_in_flight = 0
        self.calls = []

    async def complete(self, messages, user_id=None, operation="llm_completion"):
        self.calls.append(operation)
        if operation == "author_analysis":
            return self.author_reply
        title = TITLE_RE.search(messages[-1]["content"]).group(1).strip()
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        if operation == "feature_extraction":
            return FEATURES_JSON if title != "broken" else "no features here"
        return self.podcast_replies[title]

    async def invalidate(self, messages):
        return False


def seed(repository, podcasts):
    asyncio.run(repository.upsert_author(AuthorProfile(id="author1", name="Jane Founder", bio="Technologist.")))
    for podcast_id, categories in podcasts:
        asyncio.run(repository.upsert_podcast(PodcastRecord(
            id=podcast_id, title=podcast_id, categories=categories, average_episode_length=45,
        )))


def build_service(repository, gateway, config=None):
    error_handler = ErrorHandler(repository=repository, sleep=AsyncMock())
    analysis_service = AnalysisService(repository, gateway)
    return CompatibilityService(
        repository=repository,
        analysis_service=analysis_service,
        error_handler=error_handler,
        metrics_service=MetricsService(),
        default_config=config,
    )


@pytest.fixture
def catalog_gateway(author_json, podcast_json):
    replies = {
        "full": podcast_json(),
        "partial": podcast_json(topics=("technology", "entrepreneurship", "finance")),
        "offtopic": podcast_json(topics=("cooking", "travel"), minimum="lead"),
        "lowconf": podcast_json(confidence=0.5),
        "broken": "this is not json",
    }
    return FakeGateway(author_json(), replies)


@pytest.fixture
def catalog(repository):
    seed(repository, [
        ("full", ["technology", "business"]),
        ("partial", ["technology"]),
        ("offtopic", ["food"]),
        ("lowconf", ["technology"]),
        ("broken", ["technology"]),
    ])
    return repository


def test_find_matches_filters_sorts_and_ranks(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    result = asyncio.run(service.find_matches("author1"))

    assert [m.podcast_id for m in result.matches] == ["full", "partial"]
    assert [m.rank for m in result.matches] == [1, 2]
    assert result.matches[0].overall_score > result.matches[1].overall_score
    assert all(m.overall_score >= 0.6 and m.confidence >= 0.7 for m in result.matches)
    assert result.processed_count == 5
    assert result.total_candidates == 5


def test_results_and_status_are_persisted(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)
    result = asyncio.run(service.find_matches("author1"))

    stored = asyncio.run(catalog.get_match_results("author1"))
    status = asyncio.run(service.get_processing_status("author1"))

    assert [m.podcast_id for m in stored] == [m.podcast_id for m in result.matches]
    assert status.status == "completed"
    assert status.progress == 1.0
    assert status.processed_count == 5


def test_failing_candidate_is_skipped_and_reported(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    result = asyncio.run(service.find_matches("author1"))

    assert "broken" not in [m.podcast_id for m in result.matches]
    logs = asyncio.run(catalog.list_error_logs(severity="medium"))
    assert [log.context.podcast_id for log in logs] == ["broken"]
    assert service.metrics_service.event_counts["candidate_failed"] == 1


def test_max_results_truncates_after_sorting(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    result = asyncio.run(service.find_matches("author1", MatchFilter(max_results=1)))

    assert [(m.podcast_id, m.rank) for m in result.matches] == [("full", 1)]


def test_filter_thresholds_override_config(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    result = asyncio.run(service.find_matches("author1", MatchFilter(min_score=0.0, min_confidence=0.0)))

    assert [m.podcast_id for m in result.matches] == ["full", "lowconf", "partial", "offtopic"]


def test_excluded_and_topic_filtered_candidates_are_not_analyzed(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)
    match_filter = MatchFilter(topics=["Technology"], exclude_podcast_ids=["broken", "lowconf"])

    result = asyncio.run(service.find_matches("author1", match_filter))

    assert result.total_candidates == 2
    assert [m.podcast_id for m in result.matches] == ["full", "partial"]
    assert catalog_gateway.calls.count("podcast_analysis") == 2


def test_audience_level_filter(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    result = asyncio.run(service.find_matches("author1", MatchFilter(audience_levels=["beginner"])))

    assert result.matches == []


def test_concurrency_is_bounded(repository, author_json, podcast_json):
    ids = [f"pod{i}" for i in range(8)]
    seed(repository, [(pid, ["technology"]) for pid in ids])
    gateway = FakeGateway(author_json(), {pid: podcast_json() for pid in ids}, delay=0.05)
    service = build_service(repository, gateway, BatchProcessConfig(max_concurrent=2))

    result = asyncio.run(service.find_matches("author1"))

    assert gateway.max_in_flight == 2
    assert result.processed_count == 8


def test_empty_catalog_completes_with_no_matches(repository, author_json):
    seed(repository, [])
    service = build_service(repository, FakeGateway(author_json(), {}))

    result = asyncio.run(service.find_matches("author1"))

    assert result.matches == []
    assert asyncio.run(service.get_processing_status("author1")).progress == 1.0


def test_candidate_listing_failure_fails_the_batch(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    with patch.object(catalog, "list_podcasts", AsyncMock(side_effect=DatastoreError("connection lost"))):
        with pytest.raises(DatastoreError):
            asyncio.run(service.find_matches("author1"))

    status = asyncio.run(service.get_processing_status("author1"))
    assert status.status == "failed"
    assert "connection lost" in status.error
    assert len(asyncio.run(catalog.list_error_logs(severity="high"))) == 1


def test_unexpected_listing_error_is_wrapped(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    with patch.object(catalog, "list_podcasts", AsyncMock(side_effect=RuntimeError("driver crashed"))):
        with pytest.raises(DatastoreError):
            asyncio.run(service.find_matches("author1"))


def test_unknown_author_fails_the_batch(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    with pytest.raises(NotFoundError):
        asyncio.run(service.find_matches("nobody"))

    assert asyncio.run(service.get_processing_status("nobody")).status == "failed"


def test_processing_status_requires_a_run(repository, catalog_gateway):
    service = build_service(repository, catalog_gateway)

    with pytest.raises(NotFoundError):
        asyncio.run(service.get_processing_status("author1"))


def test_status_write_failure_propagates_before_any_work(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    with patch.object(catalog, "upsert_processing_status", AsyncMock(side_effect=DatastoreError("read only"))):
        with pytest.raises(DatastoreError):
            asyncio.run(service.find_matches("author1"))

    assert catalog_gateway.calls == []


def test_find_preference_matches(catalog, catalog_gateway):
    asyncio.run(catalog.upsert_user_preferences(UserPreferences(
        user_id="user1",
        topics=["technology", "startups"],
        preferred_length="medium",
        style_preferences=StylePreferences(is_interview_preferred=True),
    )))
    service = build_service(catalog, catalog_gateway)

    matches = asyncio.run(service.find_preference_matches("user1", MatchFilter(exclude_podcast_ids=["offtopic"])))

    assert [m.podcast_id for m in matches] == ["full", "lowconf", "partial"]
    assert all(m.score > 0.9 for m in matches)
    logs = asyncio.run(catalog.list_error_logs(severity="medium"))
    assert [log.context.podcast_id for log in logs] == ["broken"]


def test_find_preference_matches_requires_preferences(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)

    with pytest.raises(NotFoundError):
        asyncio.run(service.find_preference_matches("user1"))



class StatusRecorder:
    """Captures every status write, optionally failing the progress write for one count."""

    def __init__(self, repository, fail_at_count=None):
        self.write = repository.upsert_processing_status
        self.fail_at_count = fail_at_count
        self.statuses = []

    async def __call__(self, status):
        self.statuses.append(status)
        if status.status == "processing" and status.processed_count == self.fail_at_count:
            raise DatastoreError("disk I/O error")
        await self.write(status)


def test_progress_is_written_in_order(catalog, catalog_gateway):
    service = build_service(catalog, catalog_gateway)
    recorder = StatusRecorder(catalog)

    with patch.object(catalog, "upsert_processing_status", recorder):
        asyncio.run(service.find_matches("author1"))

    states = [s.status for s in recorder.statuses]
    assert states == ["processing"] * 6 + ["completed"]
    progress = recorder.statuses[1:-1]
    assert [s.processed_count for s in progress] == [1, 2, 3, 4, 5]
    assert all(0 < s.progress < 1 for s in progress[:-1])
    assert [s.progress for s in progress] == sorted(s.progress for s in progress)
    assert recorder.statuses[-1].progress == 1.0


def test_failed_run_stays_failed_and_stops_early(repository, author_json, podcast_json):
    ids = [f"pod{i}" for i in range(6)]
    seed(repository, [(pid, ["technology"]) for pid in ids])
    gateway = FakeGateway(author_json(), {pid: podcast_json() for pid in ids}, delay=0.05)
    service = build_service(repository, gateway, BatchProcessConfig(max_concurrent=2))
    recorder = StatusRecorder(repository, fail_at_count=1)

    with patch.object(repository, "upsert_processing_status", recorder):
        with pytest.raises(DatastoreError):
            asyncio.run(service.find_matches("author1"))

    states = [s.status for s in recorder.statuses]
    assert states[-1] == "failed"
    assert states.count("failed") == 1
    assert asyncio.run(repository.get_processing_status("author1")).status == "failed"
    assert gateway.calls.count("podcast_analysis") < len(ids)
