"""Wire a :class:`DiscoveryPipeline` from configuration."""

from __future__ import annotations

import logging
from typing import Optional

from src import config
from src.crawler.extraction import ContentExtractor
from src.crawler.fetcher import RateLimitedFetcher
from src.crawler.utils import mask_secret
from src.models.database import DatabaseManager
from src.pipeline.classifier import Classifier
from src.pipeline.finalizer import Finalizer
from src.pipeline.images import ImageSelector
from src.pipeline.phases import DiscoveryPipeline
from src.pipeline.titles import TitleFormatter
from src.services.completion import CompletionService, OpenAICompletionService
from src.services.extraction_service import StructuredExtractionClient

logger = logging.getLogger(__name__)


def build_completion_service() -> Optional[CompletionService]:
    if not config.OPENAI_API_KEY:
        logger.info("OPENAI_API_KEY not set; completion-backed steps use fallbacks")
        return None
    logger.info(
        "Using completion model %s (key %s)",
        config.COMPLETION_MODEL,
        mask_secret(config.OPENAI_API_KEY),
    )
    return OpenAICompletionService()


def build_pipeline(
    db: DatabaseManager | None = None,
    fetcher: RateLimitedFetcher | None = None,
    completion: CompletionService | None = None,
    *,
    use_jobs: bool = False,
) -> DiscoveryPipeline:
    """Assemble the pipeline; missing collaborators are built from config."""
    db = db or DatabaseManager()
    fetcher = fetcher or RateLimitedFetcher()
    if completion is None:
        completion = build_completion_service()

    extraction_service = StructuredExtractionClient(fetcher)
    if not extraction_service.configured:
        logger.info("Extraction service key not set; using HTTP extraction only")

    extractor = ContentExtractor(
        fetcher, extraction_service=extraction_service, use_jobs=use_jobs
    )
    finalizer = Finalizer(
        ImageSelector(completion, fetcher),
        TitleFormatter(completion),
    )
    return DiscoveryPipeline(
        db,
        fetcher,
        extractor,
        Classifier(completion),
        finalizer,
    )
