"""SQLAlchemy database models for the organization news pipeline."""

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    create_engine,
    text,
)
from sqlalchemy.orm import (
    Mapped,
    declarative_base,
    mapped_column,
    relationship,
    sessionmaker,
)

Base: Any = declarative_base()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Organization(Base):
    """An organization whose news coverage is being catalogued."""

    __tablename__ = "organizations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    news_url: Mapped[str | None] = mapped_column(String)
    website: Mapped[str | None] = mapped_column(String)
    tags: Mapped[list | None] = mapped_column(JSON, default=list)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(DateTime, onupdate=utcnow)

    articles = relationship("Article", back_populates="organization")
    discovery_sessions = relationship(
        "DiscoverySession", back_populates="organization"
    )


class DiscoverySession(Base):
    """One run of the three-phase discovery workflow for an organization."""

    __tablename__ = "discovery_sessions"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    organization_id = Column(
        String, ForeignKey("organizations.id"), nullable=False, index=True
    )
    news_url = Column(String, nullable=False)
    status = Column(String, nullable=False, default="discovering", index=True)
    total_urls = Column(Integer, nullable=False, default=0)
    selected_urls = Column(Integer, nullable=False, default=0)
    processed_urls = Column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(DateTime, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)

    organization = relationship("Organization", back_populates="discovery_sessions")
    discovered_urls = relationship(
        "DiscoveredUrl",
        back_populates="session",
        order_by="DiscoveredUrl.position",
    )
    scraped_contents = relationship("ScrapedContent", back_populates="session")


class DiscoveredUrl(Base):
    """A candidate article link found on the seed page."""

    __tablename__ = "discovered_urls"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    discovery_session_id = Column(
        String, ForeignKey("discovery_sessions.id"), nullable=False, index=True
    )
    url = Column(String, nullable=False)
    url_type = Column(String, nullable=False, default="news")  # news | post
    domain = Column(String)
    title_preview: Mapped[str | None] = mapped_column(Text)
    position = Column(Integer, nullable=False, default=0)
    selected_for_scraping = Column(Boolean, nullable=False, default=False)
    scrape_status = Column(String, nullable=False, default="pending", index=True)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    session = relationship("DiscoverySession", back_populates="discovered_urls")
    scraped_content = relationship(
        "ScrapedContent", back_populates="discovered_url", uselist=False
    )


class ScrapedContent(Base):
    """Extraction and classification output for one discovered URL."""

    __tablename__ = "scraped_contents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    discovered_url_id = Column(
        String, ForeignKey("discovered_urls.id"), nullable=False, unique=True
    )
    discovery_session_id = Column(
        String, ForeignKey("discovery_sessions.id"), nullable=False, index=True
    )
    title: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)
    markdown_content: Mapped[str | None] = mapped_column(Text)
    keywords: Mapped[list | None] = mapped_column(JSON, default=list)
    author: Mapped[str | None] = mapped_column(String)
    published_at: Mapped[datetime | None] = mapped_column(DateTime)
    og_image: Mapped[str | None] = mapped_column(String)
    images: Mapped[list | None] = mapped_column(JSON, default=list)
    sentiment_score: Mapped[int | None] = mapped_column(Integer)
    sentiment_reasoning: Mapped[str | None] = mapped_column(Text)
    extraction_tier: Mapped[str | None] = mapped_column(String)
    selected_for_finalization = Column(Boolean, nullable=False, default=False)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    discovered_url = relationship("DiscoveredUrl", back_populates="scraped_content")
    session = relationship("DiscoverySession", back_populates="scraped_contents")

    @property
    def url(self) -> str | None:
        return self.discovered_url.url if self.discovered_url else None


class DiscoveryBatch(Base):
    """A bulk scrape over an explicit list of URLs."""

    __tablename__ = "discovery_batches"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    organization_id = Column(
        String, ForeignKey("organizations.id"), nullable=True, index=True
    )
    status = Column(String, nullable=False, default="discovering", index=True)
    total_urls = Column(Integer, nullable=False, default=0)
    processed_urls = Column(Integer, nullable=False, default=0)
    successful_urls = Column(Integer, nullable=False, default=0)
    duplicate_urls = Column(Integer, nullable=False, default=0)
    failed_urls = Column(Integer, nullable=False, default=0)
    current_chunk = Column(Integer, nullable=False, default=0)
    discovered_urls: Mapped[list | None] = mapped_column(JSON)
    processing_results: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(DateTime, onupdate=utcnow)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)


class Article(Base):
    """A catalogued article, one row per URL."""

    __tablename__ = "articles"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    organization_id = Column(
        String, ForeignKey("organizations.id"), nullable=False, index=True
    )
    url = Column(String, nullable=False, unique=True, index=True)
    title = Column(Text, nullable=False)
    summary: Mapped[str | None] = mapped_column(Text)
    content: Mapped[str | None] = mapped_column(Text)
    author: Mapped[str | None] = mapped_column(String)
    published_at: Mapped[datetime | None] = mapped_column(DateTime)
    og_image: Mapped[str | None] = mapped_column(String)
    images: Mapped[list | None] = mapped_column(JSON, default=list)
    keywords: Mapped[list | None] = mapped_column(JSON, default=list)
    # Legacy three-way sentiment derived from sentiment_score
    sentiment = Column(String, nullable=False, default="neutral")
    sentiment_score: Mapped[int | None] = mapped_column(Integer)
    organization_sentiment: Mapped[str | None] = mapped_column(String)
    organization_relevance: Mapped[str | None] = mapped_column(String)
    content_type: Mapped[str | None] = mapped_column(String)
    validation_reasons: Mapped[list | None] = mapped_column(JSON, default=list)
    status = Column(String, nullable=False, default="draft", index=True)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )
    updated_at = Column(DateTime, onupdate=utcnow)

    organization = relationship("Organization", back_populates="articles")
    raw_document = relationship(
        "RawDocument", back_populates="article", uselist=False
    )
    enrichment = relationship("Enrichment", back_populates="article", uselist=False)


class RawDocument(Base):
    """Write-once snapshot of the scraped text behind an article."""

    __tablename__ = "raw_documents"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    article_id = Column(
        String, ForeignKey("articles.id"), nullable=False, unique=True
    )
    url = Column(String, nullable=False)
    text: Mapped[str | None] = mapped_column(Text)
    markdown: Mapped[str | None] = mapped_column(Text)
    fetched_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )

    article = relationship("Article", back_populates="raw_document")


class Enrichment(Base):
    """Write-once record of the enrichment values first applied to an article."""

    __tablename__ = "enrichments"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    article_id = Column(
        String, ForeignKey("articles.id"), nullable=False, unique=True
    )
    title: Mapped[str | None] = mapped_column(Text)
    summary: Mapped[str | None] = mapped_column(Text)
    keywords: Mapped[list | None] = mapped_column(JSON, default=list)
    sentiment: Mapped[str | None] = mapped_column(String)
    author: Mapped[str | None] = mapped_column(String)
    published_at: Mapped[datetime | None] = mapped_column(DateTime)
    # `metadata` is reserved on declarative classes.
    meta: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at = Column(
        DateTime, nullable=False, server_default=text("CURRENT_TIMESTAMP")
    )

    article = relationship("Article", back_populates="enrichment")


class PipelineRun(Base):
    """Audit row for one single-URL pipeline execution."""

    __tablename__ = "pipeline_runs"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_uuid)
    organization_id = Column(
        String, ForeignKey("organizations.id"), nullable=True, index=True
    )
    input_url = Column(String, nullable=False)
    status = Column(String, nullable=False, default="running", index=True)
    success: Mapped[bool | None] = mapped_column(Boolean)
    steps_data: Mapped[dict | None] = mapped_column(JSON)
    article_id: Mapped[str | None] = mapped_column(String)
    error_message: Mapped[str | None] = mapped_column(Text)
    error_category: Mapped[str | None] = mapped_column(String)
    started_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, default=utcnow
    )
    completed_at: Mapped[datetime | None] = mapped_column(DateTime)
    duration_ms: Mapped[int | None] = mapped_column(Integer)


# Database utilities


def create_database_engine(database_url: str = "sqlite:///data/news_pipeline.db"):
    """Create SQLAlchemy engine with proper configuration."""
    if database_url.startswith("sqlite"):
        engine = create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
            echo=False,
        )
    else:
        engine = create_engine(
            database_url,
            pool_size=10,
            max_overflow=20,
            pool_timeout=30,
            pool_pre_ping=True,
            echo=False,
        )

    return engine


def create_engine_from_env():
    """Create SQLAlchemy engine from the configured ``DATABASE_URL``.

    Example:
        >>> from src.models import create_engine_from_env, create_tables
        >>> engine = create_engine_from_env()
        >>> create_tables(engine)
    """
    from src.config import DATABASE_URL

    return create_database_engine(DATABASE_URL)


def create_tables(engine):
    """Create all tables in the database."""
    Base.metadata.create_all(engine)


def get_session(engine):
    """Get a database session."""
    Session = sessionmaker(bind=engine)
    return Session()
