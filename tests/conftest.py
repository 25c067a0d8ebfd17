import json
import os
import sys

import pytest

# Add the project root directory to sys.path so that 'podmatch' can be imported
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from podmatch.persistence.postgresql import create_db_engine, create_session_factory, create_tables
from podmatch.persistence.repository import MatchRepository


@pytest.fixture
def db_engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'podmatch_test.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def repository(db_engine):
    return MatchRepository(create_session_factory(db_engine))


@pytest.fixture
def author_json():
    """Builds the JSON an LLM would return for an author analysis."""
    def build(topics=("technology", "entrepreneurship", "innovation"), expertise="expert",
              style="professional", key_points=("Scaling technology startups",), confidence=0.9):
        return json.dumps({
            "topics": list(topics),
            "expertiseLevel": expertise,
            "communicationStyle": style,
            "keyPoints": list(key_points),
            "confidence": confidence,
        })
    return build


@pytest.fixture
def podcast_json():
    """Builds the JSON an LLM would return for a podcast analysis."""
    def build(topics=("technology", "entrepreneurship", "innovation"), minimum="expert",
              preferences=("professional", "clear"), host="interview", audience="expert", confidence=0.85):
        return json.dumps({
            "hostStyle": host,
            "audienceLevel": audience,
            "topicDepth": "deep",
            "guestRequirements": {
                "minimumExpertise": minimum,
                "preferredTopics": list(topics),
                "communicationPreference": list(preferences),
            },
            "topicalFocus": list(topics),
            "confidence": confidence,
        })
    return build
