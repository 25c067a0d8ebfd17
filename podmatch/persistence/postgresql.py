import logging
from typing import Callable

from sqlalchemy import (
    JSON,
    Column,
    DateTime,
    Float,
    Integer,
    String,
    Text,
    create_engine,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, declarative_base, sessionmaker

logger = logging.getLogger(__name__)

Base = declarative_base()

SessionFactory = Callable[[], Session]

# --- Database Models ---

class Author(Base):
    __tablename__ = "authors"

    id = Column(String, primary_key=True, index=True)
    name = Column(String, nullable=False)
    bio = Column(Text, nullable=True)
    books = Column(JSON, nullable=False, default=list)

    def __repr__(self):
        return f"<Author(id='{self.id}', name='{self.name}')>"


class Podcast(Base):
    __tablename__ = "podcasts"

    id = Column(String, primary_key=True, index=True)
    title = Column(String, nullable=False, index=True)
    description = Column(Text, nullable=True)
    publisher = Column(String, nullable=True)
    categories = Column(JSON, nullable=False, default=list)
    average_episode_length = Column(Float, nullable=True)
    total_episodes = Column(Integer, nullable=True)
    language = Column(String, nullable=True)
    format = Column(String, nullable=True)
    rating = Column(Float, nullable=True, index=True)

    def __repr__(self):
        return f"<Podcast(id='{self.id}', title='{self.title}')>"


class AuthorAnalysisRow(Base):
    __tablename__ = "author_analysis"

    author_id = Column(String, primary_key=True)
    analysis = Column(JSON, nullable=False)
    last_analyzed = Column(DateTime(timezone=True), nullable=False)


class PodcastAnalysisRow(Base):
    __tablename__ = "podcast_analysis"

    podcast_id = Column(String, primary_key=True)
    analysis = Column(JSON, nullable=False)
    last_analyzed = Column(DateTime(timezone=True), nullable=False)


class CacheEntryRow(Base):
    __tablename__ = "cache_entries"

    key = Column(String, primary_key=True)
    value = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    usage_count = Column(Integer, nullable=False, default=0)


class MatchResultRow(Base):
    __tablename__ = "match_results"

    id = Column(Integer, primary_key=True, autoincrement=True)
    author_id = Column(String, nullable=False, index=True)
    podcast_id = Column(String, nullable=False)
    overall_score = Column(Float, nullable=False)
    confidence = Column(Float, nullable=False)
    rank = Column(Integer, nullable=True)
    result = Column(JSON, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)


class ProcessingStatusRow(Base):
    __tablename__ = "processing_status"

    author_id = Column(String, primary_key=True)
    status = Column(String, nullable=False)
    progress = Column(Float, nullable=False, default=0.0)
    processed_count = Column(Integer, nullable=False, default=0)
    total_candidates = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class ErrorLogRow(Base):
    __tablename__ = "error_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime(timezone=True), nullable=False, index=True)
    error_type = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    severity = Column(String, nullable=False, index=True)
    context = Column(JSON, nullable=True)


class UserPreferencesRow(Base):
    __tablename__ = "user_preferences"

    user_id = Column(String, primary_key=True)
    topics = Column(JSON, nullable=False, default=list)
    preferred_length = Column(String, nullable=True)
    style_preferences = Column(JSON, nullable=False, default=dict)


class PreferenceAdjustmentRow(Base):
    __tablename__ = "preference_adjustments"

    user_id = Column(String, primary_key=True)
    topic_weights = Column(JSON, nullable=False, default=dict)
    style_weights = Column(JSON, nullable=False, default=dict)
    last_adjusted = Column(DateTime(timezone=True), nullable=False)


# --- Database Connection Management ---

def create_db_engine(database_url: str, echo: bool = False) -> Engine:
    """Builds an engine for `database_url`. SQLite URLs get thread-friendly settings."""
    connect_args = {}
    if database_url.startswith("sqlite"):
        # Sessions are used from worker threads via asyncio.to_thread
        connect_args = {"check_same_thread": False, "timeout": 30}
    try:
        engine = create_engine(database_url, pool_pre_ping=True, echo=echo, connect_args=connect_args)
        logger.info(f"Database engine created for dialect '{engine.dialect.name}'.")
        return engine
    except SQLAlchemyError as e:
        logger.error(f"Failed to create database engine: {e}")
        raise


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autoflush=False, expire_on_commit=False, bind=engine)


def create_tables(engine: Engine) -> None:
    """Creates all tables defined by the declarative models if they don't exist."""
    try:
        logger.info("Creating database tables (if they don't exist)...")
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables checked/created successfully.")
    except SQLAlchemyError as e:
        logger.error(f"Error creating database tables: {e}")
        raise
