from datetime import datetime

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from src.models import (
    Article,
    DiscoveredUrl,
    DiscoverySession,
    Enrichment,
    Organization,
    RawDocument,
    ScrapedContent,
)
from src.models import database as database_module
from src.pipeline.finalizer import Finalizer
from src.pipeline.images import ImageSelector
from src.pipeline.titles import TitleFormatter
from src.pipeline.validation import validate_article
from tests.helpers.fakes import ARTICLE_BODY, FakeFetcher, make_organization


def _scraped(
    session,
    discovery,
    url,
    *,
    title="Pantry &amp; Shelter opens",
    score=2,
    published=datetime(2025, 3, 3),
    images=None,
):
    discovered = DiscoveredUrl(
        discovery_session_id=discovery.id,
        url=url,
        url_type="news",
        scrape_status="scraped",
    )
    session.add(discovered)
    session.flush()
    scraped = ScrapedContent(
        discovered_url_id=discovered.id,
        discovery_session_id=discovery.id,
        title=title,
        summary="A second pantry opened.",
        markdown_content=ARTICLE_BODY,
        keywords=["food bank"],
        author="Jordan Reyes",
        published_at=published,
        images=images if images is not None else ["https://cdn.example.org/a.jpg"],
        sentiment_score=score,
        sentiment_reasoning="Pantry is the story",
        extraction_tier="structured",
    )
    session.add(scraped)
    session.commit()
    return scraped


@pytest.fixture
def seeded(db):
    org_id = make_organization(db)
    session = db.Session()
    discovery = DiscoverySession(
        organization_id=org_id,
        news_url="https://riverside.example.org/news",
        status="analyzing",
    )
    session.add(discovery)
    session.commit()
    organization = session.get(Organization, org_id)
    yield session, discovery, organization
    session.close()


def _finalizer(validator=validate_article):
    return Finalizer(ImageSelector(None, FakeFetcher()), TitleFormatter(None), validator)


def _count(session, model):
    return session.execute(select(func.count()).select_from(model)).scalar_one()


def test_finalize_creates_article_with_audit_rows(seeded):
    session, discovery, organization = seeded
    scraped = _scraped(session, discovery, "https://paper.example.com/pantry-story")

    report = _finalizer().finalize(session, [scraped], organization)

    assert report.success_count == 1
    assert report.failed_count == 0
    assert report.created_articles == ["Pantry & Shelter opens"]
    article = session.get(Article, report.article_ids[0])
    assert article.status == "draft"
    assert article.sentiment == "neutral"
    assert article.organization_relevance == "high"
    assert article.organization_sentiment == "Main Focus"
    assert article.og_image == "https://cdn.example.org/a.jpg"
    assert article.raw_document.text == ARTICLE_BODY
    assert article.raw_document.markdown == ARTICLE_BODY
    assert article.enrichment.meta["scraped_content_id"] == scraped.id
    assert scraped.selected_for_finalization is True


def test_second_finalize_updates_in_place(seeded):
    session, discovery, organization = seeded
    scraped = _scraped(session, discovery, "https://paper.example.com/pantry-story")
    finalizer = _finalizer()
    first = finalizer.finalize(session, [scraped], organization)

    scraped.title = "Pantry opens a second site"
    scraped.sentiment_score = 3
    session.commit()
    second = finalizer.finalize(session, [scraped], organization)

    assert second.created_articles == []
    assert second.updated_articles == ["Pantry opens a second site"]
    assert second.article_ids == first.article_ids
    article = session.get(Article, first.article_ids[0])
    assert article.sentiment == "positive"
    assert article.organization_sentiment == "Social Impact"
    assert _count(session, Article) == 1
    assert _count(session, RawDocument) == 1
    assert _count(session, Enrichment) == 1


def test_old_articles_are_stored_as_rejected(seeded):
    session, discovery, organization = seeded
    scraped = _scraped(
        session,
        discovery,
        "https://paper.example.com/old-story",
        published=datetime(2019, 6, 1),
    )

    report = _finalizer().finalize(session, [scraped], organization)

    article = session.get(Article, report.article_ids[0])
    assert article.status == "rejected"
    assert any("published before" in reason for reason in article.validation_reasons)


def test_one_failing_item_does_not_roll_back_the_others(seeded):
    session, discovery, organization = seeded
    good = _scraped(session, discovery, "https://paper.example.com/good-story")
    bad = _scraped(
        session, discovery, "https://paper.example.com/bad-story", title="Broken"
    )

    def validator(content, classification, url):
        if url.endswith("bad-story"):
            raise RuntimeError("validator exploded")
        return validate_article(content, classification, url)

    report = _finalizer(validator).finalize(session, [bad, good], organization)

    assert report.success_count == 1
    assert report.failed_count == 1
    assert report.total_processed == 2
    assert report.errors == ["Broken: validator exploded"]
    assert _count(session, Article) == 1


def test_untitled_content_gets_placeholder_title(seeded):
    session, discovery, organization = seeded
    scraped = _scraped(
        session, discovery, "https://paper.example.com/untitled-story", title=None
    )

    report = _finalizer().finalize(session, [scraped], organization)

    assert report.created_articles == ["Untitled Article"]


def test_duplicate_url_insert_is_reported_as_persistence_error(seeded):
    session, discovery, organization = seeded
    scraped = _scraped(session, discovery, "https://paper.example.com/race-story")

    def racing_validator(content, classification, url):
        # A concurrent writer lands between the URL lookup and the insert.
        session.add(
            Article(organization_id=organization.id, url=url, title="Racing writer")
        )
        return validate_article(content, classification, url)

    report = _finalizer(racing_validator).finalize(session, [scraped], organization)

    assert report.failed_count == 1
    assert report.errors == [
        "Pantry &amp; Shelter opens: Article with this URL already exists"
    ]
    assert _count(session, Article) == 0


def test_lock_error_on_commit_replays_the_item(seeded, monkeypatch):
    session, discovery, organization = seeded
    scraped = _scraped(session, discovery, "https://paper.example.com/locked-story")
    monkeypatch.setattr(database_module.time, "sleep", lambda _seconds: None)
    real_commit = session.commit
    calls = []

    def commit_locked_once():
        calls.append(True)
        if len(calls) == 1:
            raise OperationalError("COMMIT", {}, Exception("database is locked"))
        real_commit()

    monkeypatch.setattr(session, "commit", commit_locked_once)

    report = _finalizer().finalize(session, [scraped], organization)

    assert len(calls) == 2
    assert report.success_count == 1
    assert report.failed_count == 0
    assert report.created_articles == ["Pantry & Shelter opens"]
    session.expire_all()
    assert _count(session, Article) == 1
    assert _count(session, RawDocument) == 1
    assert _count(session, Enrichment) == 1
    article = session.get(Article, report.article_ids[0])
    assert article.raw_document is not None
    assert article.enrichment.meta["scraped_content_id"] == scraped.id
    assert session.get(ScrapedContent, scraped.id).selected_for_finalization is True
