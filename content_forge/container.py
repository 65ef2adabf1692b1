"""
Service wiring.

Builds the ledger, budget policy, stores, providers and job orchestrators
from configuration. Everything is passed explicitly; there are no module
level singletons, so tests can build an isolated set with in-memory
providers.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from openai import AsyncOpenAI

from .config.loader import AppConfig
from .core.budget import BudgetPolicy
from .core.interfaces import (
    Downloader,
    ImageGenerator,
    PhotoSearch,
    StyleSelector,
    TextGenerator,
    Transcriber,
)
from .core.jobs import (
    ImprovePostJob,
    InfographicJob,
    PostAnalysisJob,
    ReelAnalysisJob,
    TextGenerationJob,
    VideoUploadJob,
)
from .core.search import StockPhotoSearch
from .core.style import KeywordStyleSelector
from .sdk.downloader import YtDlpDownloader
from .sdk.openai_client import OpenAIImageGenerator, OpenAITextGenerator, OpenAITranscriber
from .sdk.pexels import PexelsPhotoSearch
from .storage.repository import ArtifactRepository, CostLedger, ProcessLogRepository, initialize_schema

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Everything a request handler or CLI command needs."""
    config: AppConfig
    ledger: CostLedger
    budget: BudgetPolicy
    artifacts: ArtifactRepository
    process_log: ProcessLogRepository
    text_job: TextGenerationJob
    reel_job: ReelAnalysisJob
    infographic_job: InfographicJob
    improve_job: ImprovePostJob
    analysis_job: PostAnalysisJob
    upload_job: VideoUploadJob
    photo_search: StockPhotoSearch


def build_storage(config: AppConfig, clock: Callable[[], datetime] = datetime.now):
    """Ledger, budget policy and stores only; no provider clients."""
    db_path = config.storage.db_path
    initialize_schema(db_path)
    ledger = CostLedger(db_path)
    budget = BudgetPolicy(
        ledger,
        monthly_budget=config.budget.monthly,
        alert_threshold=config.budget.alert_threshold,
        daily_limit=config.budget.daily_limit,
        clock=clock,
    )
    return ledger, budget, ArtifactRepository(db_path), ProcessLogRepository(db_path)


def build_services(
    config: AppConfig,
    text_generator: Optional[TextGenerator] = None,
    image_generator: Optional[ImageGenerator] = None,
    transcriber: Optional[Transcriber] = None,
    downloader: Optional[Downloader] = None,
    style_selector: Optional[StyleSelector] = None,
    photo_search: Optional[PhotoSearch] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Services:
    """Wire all services. Providers not given are created from config.

    The OpenAI client reads OPENAI_API_KEY from the environment and is only
    created when at least one OpenAI provider is needed. A missing
    PEXELS_API_KEY only fails photo searches.
    """
    ledger, budget, artifacts, process_log = build_storage(config, clock)

    if text_generator is None or image_generator is None or transcriber is None:
        client = AsyncOpenAI()
        providers = config.providers
        text_generator = text_generator or OpenAITextGenerator(providers.text_model, client=client)
        image_generator = image_generator or OpenAIImageGenerator(providers.image_model, client=client)
        transcriber = transcriber or OpenAITranscriber(providers.transcription_model, client=client)

    if downloader is None:
        downloader = YtDlpDownloader(Path(config.storage.temp_dir))

    shared = dict(ledger=ledger, budget=budget, artifacts=artifacts, process_log=process_log, clock=clock)
    logger.info("Services ready (db=%s)", config.storage.db_path)

    return Services(
        config=config,
        ledger=ledger,
        budget=budget,
        artifacts=artifacts,
        process_log=process_log,
        text_job=TextGenerationJob(text_generator, **shared),
        reel_job=ReelAnalysisJob(text_generator, transcriber, downloader, **shared),
        infographic_job=InfographicJob(
            image_generator,
            style_selector or KeywordStyleSelector(),
            Path(config.storage.artifacts_dir),
            **shared,
        ),
        improve_job=ImprovePostJob(text_generator, **shared),
        analysis_job=PostAnalysisJob(text_generator, **shared),
        upload_job=VideoUploadJob(text_generator, transcriber, **shared),
        photo_search=StockPhotoSearch(photo_search or PexelsPhotoSearch(), ledger, clock=clock),
    )
