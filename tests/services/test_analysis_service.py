import asyncio
import json
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
from langchain_core.messages import AIMessage

from podmatch.api.exceptions import AnalysisError, NotFoundError
from podmatch.api.llm_gateway import LLMGateway
from podmatch.api.rate_limiter import SlidingWindowRateLimiter
from podmatch.models.analysis import (
    AuthorAnalysis,
    AuthorProfile,
    BookInfo,
    PodcastAnalysis,
    PodcastFeatures,
    PodcastRecord,
)
from podmatch.services.analysis_service import AnalysisService
from podmatch.services.cache_service import CacheStore, MemoryCacheBackend
from podmatch.services.error_handler import ErrorHandler

T0 = datetime(2024, 3, 1, tzinfo=timezone.utc)

FEATURES_JSON = json.dumps({
    "mainTopics": ["technology", "startups"],
    "contentStyle": {"isInterview": True, "isEducational": True},
    "complexityLevel": "Moderate",
    "productionQuality": 85,
    "hostingStyle": ["conversational"],
})


class FakeClock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def gateway():
    mock = MagicMock(spec=LLMGateway)
    mock.complete = AsyncMock()
    mock.invalidate = AsyncMock(return_value=True)
    return mock


@pytest.fixture
def seeded_repository(repository):
    asyncio.run(repository.upsert_author(AuthorProfile(
        id="author1",
        name="Jane Founder",
        bio="Serial entrepreneur and technologist.",
        books=[BookInfo(title="Build Fast", genre=["business"], target_audience=["founders"])],
    )))
    asyncio.run(repository.upsert_podcast(PodcastRecord(
        id="pod1",
        title="Tech Founders Weekly",
        description="Interviews with startup founders.",
        categories=["technology", "business"],
        average_episode_length=45,
    )))
    return repository


@pytest.fixture
def service(seeded_repository, gateway, clock):
    return AnalysisService(seeded_repository, gateway, clock=clock)


def test_author_analysis_is_generated_and_stored(service, seeded_repository, gateway, author_json):
    gateway.complete.return_value = author_json()

    analysis = asyncio.run(service.get_author_analysis("author1"))

    assert isinstance(analysis, AuthorAnalysis)
    assert analysis.expertise_level == "expert"
    assert analysis.topics == ["technology", "entrepreneurship", "innovation"]
    assert analysis.last_analyzed == T0
    assert gateway.complete.await_args.kwargs["operation"] == "author_analysis"
    stored = asyncio.run(seeded_repository.get_author_analysis("author1"))
    assert stored == analysis


def test_fresh_author_analysis_is_reused(service, gateway, clock, author_json):
    gateway.complete.return_value = author_json()

    first = asyncio.run(service.get_author_analysis("author1"))
    clock.advance(days=6, hours=23)
    second = asyncio.run(service.get_author_analysis("author1"))

    assert gateway.complete.await_count == 1
    assert second == first


def test_stale_author_analysis_is_regenerated(service, seeded_repository, gateway, clock, author_json):
    gateway.complete.side_effect = [author_json(expertise="intermediate"), author_json(expertise="lead")]

    asyncio.run(service.get_author_analysis("author1"))
    clock.advance(days=7)
    refreshed = asyncio.run(service.get_author_analysis("author1"))

    assert gateway.complete.await_count == 2
    assert refreshed.expertise_level == "lead"
    assert refreshed.last_analyzed == T0 + timedelta(days=7)
    stored = asyncio.run(seeded_repository.get_author_analysis("author1"))
    assert stored.expertise_level == "lead"


def test_podcast_analysis_uses_thirty_day_window(service, gateway, clock, podcast_json):
    gateway.complete.return_value = podcast_json()

    asyncio.run(service.get_podcast_analysis("pod1"))
    clock.advance(days=29)
    asyncio.run(service.get_podcast_analysis("pod1"))
    assert gateway.complete.await_count == 1

    clock.advance(days=1)
    asyncio.run(service.get_podcast_analysis("pod1"))
    assert gateway.complete.await_count == 2


def test_podcast_analysis_fields(service, gateway, podcast_json):
    gateway.complete.return_value = podcast_json(minimum="intermediate", audience="mixed")

    analysis = asyncio.run(service.get_podcast_analysis("pod1"))

    assert isinstance(analysis, PodcastAnalysis)
    assert analysis.audience_level == "mixed"
    assert analysis.guest_requirements.minimum_expertise == "intermediate"
    assert analysis.confidence == pytest.approx(0.85)


def test_unknown_subjects_raise_not_found(service, gateway):
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_author_analysis("ghost"))
    with pytest.raises(NotFoundError):
        asyncio.run(service.get_podcast_analysis("ghost"))
    gateway.complete.assert_not_awaited()


def test_unparseable_reply_raises_analysis_error(service, seeded_repository, gateway):
    gateway.complete.return_value = "I'm sorry, I can't help with that."

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(service.get_author_analysis("author1"))

    assert exc_info.value.code == "PROCESSING_ERROR"
    assert exc_info.value.raw_response == "I'm sorry, I can't help with that."
    assert asyncio.run(seeded_repository.get_author_analysis("author1")) is None


def test_invalid_enum_value_raises_analysis_error(service, gateway, podcast_json):
    reply = json.loads(podcast_json())
    reply["hostStyle"] = "interpretive dance"
    gateway.complete.return_value = json.dumps(reply)

    with pytest.raises(AnalysisError):
        asyncio.run(service.get_podcast_analysis("pod1"))


def test_get_analysis_dispatches_on_entity_type(service, gateway, author_json, podcast_json):
    gateway.complete.side_effect = [author_json(), podcast_json()]

    assert isinstance(asyncio.run(service.get_analysis("author1", "author")), AuthorAnalysis)
    assert isinstance(asyncio.run(service.get_analysis("pod1")), PodcastAnalysis)
    with pytest.raises(ValueError):
        asyncio.run(service.get_analysis("pod1", "episode"))


def test_podcast_features_are_cached(seeded_repository, gateway, clock):
    cache = CacheStore(MemoryCacheBackend(), PodcastFeatures, namespace="features",
                       default_ttl=timedelta(days=30), clock=clock)
    service = AnalysisService(seeded_repository, gateway, features_cache=cache, clock=clock)
    gateway.complete.return_value = FEATURES_JSON

    first = asyncio.run(service.get_podcast_features("pod1"))
    second = asyncio.run(service.get_podcast_features("pod1"))

    assert gateway.complete.await_count == 1
    assert second == first
    assert first.complexity_level == "intermediate"
    assert first.average_episode_length == 45
    assert first.content_style.is_interview is True


def test_podcast_features_parse_failure_is_an_extraction_error(service, gateway):
    gateway.complete.return_value = "{not json"

    with pytest.raises(AnalysisError) as exc_info:
        asyncio.run(service.get_podcast_features("pod1"))

    assert exc_info.value.code == "EXTRACTION_ERROR"


class ScriptedChatModel:
    def __init__(self, replies):
        self.replies = list(replies)
        self.calls = 0

    async def ainvoke(self, messages):
        self.calls += 1
        return AIMessage(content=self.replies.pop(0))


def test_unparseable_reply_is_not_served_again_from_cache(seeded_repository, podcast_json):
    llm = ScriptedChatModel(["not json at all", podcast_json()])
    cached_gateway = LLMGateway(
        llm=llm,
        rate_limiter=SlidingWindowRateLimiter(50, 60),
        error_handler=ErrorHandler(sleep=AsyncMock()),
        cache=CacheStore(MemoryCacheBackend(), str, namespace="llm", default_ttl=timedelta(hours=24)),
    )
    service = AnalysisService(seeded_repository, cached_gateway)

    with pytest.raises(AnalysisError):
        asyncio.run(service.get_podcast_analysis("pod1"))
    analysis = asyncio.run(service.get_podcast_analysis("pod1"))

    assert analysis.podcast_id == "pod1"
    assert llm.calls == 2


def test_parse_failures_drop_the_cached_reply(service, gateway):
    gateway.complete.return_value = "garbage"

    with pytest.raises(AnalysisError):
        asyncio.run(service.get_author_analysis("author1"))
    with pytest.raises(AnalysisError):
        asyncio.run(service.get_podcast_features("pod1"))

    assert gateway.invalidate.await_count == 2
