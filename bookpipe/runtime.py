"""
Wiring of storage, catalog, providers and orchestrator.

The web service and the CLI both build one ``Runtime`` and share it for the
life of the process.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from .config import PipelineConfig
from .documents import DocumentCatalog
from .jobs.manager import JobOrchestrator
from .jobs.models import JobKind
from .jobs.query import JobQueryService
from .jobs.storage import JobStorage, JobStore
from .jobs.worker import ImageTaskExecutor, SpeechTaskExecutor
from .providers import (
    ArtifactStore,
    ElevenLabsSpeechProvider,
    ImageProvider,
    SpeechProvider,
    StableDiffusionImageProvider
)

logger = logging.getLogger(__name__)


@dataclass
class Runtime:
    config: PipelineConfig
    storage: JobStore
    catalog: DocumentCatalog
    artifacts: ArtifactStore
    orchestrator: JobOrchestrator
    query: JobQueryService

    def close(self):
        """Stop the workers and release the store."""
        self.orchestrator.shutdown()
        close = getattr(self.storage, 'close', None)
        if close is not None:
            close()


def build_runtime(
    config: Optional[PipelineConfig] = None,
    storage: Optional[JobStore] = None,
    catalog: Optional[DocumentCatalog] = None,
    speech_provider: Optional[SpeechProvider] = None,
    image_provider: Optional[ImageProvider] = None
) -> Runtime:
    """
    Assemble a runtime.

    Args:
        config: Configuration; loaded from the environment when omitted
        storage: Job store; a SQLite store at ``config.db_path`` when omitted
        catalog: Document catalog; a fresh empty one when omitted
        speech_provider: Overrides the ElevenLabs client
        image_provider: Overrides the Stable Diffusion client

    Returns:
        Runtime with a started worker pool
    """
    config = config or PipelineConfig.from_env()
    storage = storage if storage is not None else JobStorage(config.db_path)
    catalog = catalog if catalog is not None else DocumentCatalog()
    artifacts = ArtifactStore(config.artifact_dir)

    if speech_provider is None:
        speech_provider = ElevenLabsSpeechProvider(
            config.elevenlabs_api_key,
            config.elevenlabs_voice_id,
            model_id=config.elevenlabs_model_id,
            timeout=config.task_timeout
        )
        if not config.elevenlabs_api_key:
            logger.warning("ELEVENLABS_API_KEY is not set; narration tasks will fail")
    if image_provider is None:
        image_provider = StableDiffusionImageProvider(config.sd_webui_url, timeout=config.task_timeout)

    executors = {
        JobKind.NARRATE: SpeechTaskExecutor(
            speech_provider, artifacts, storage, skip_existing=config.skip_existing_audio
        ),
        JobKind.ILLUSTRATE: ImageTaskExecutor(image_provider, artifacts),
    }

    orchestrator = JobOrchestrator.from_config(config, storage, executors=executors, resolver=catalog)
    return Runtime(
        config=config,
        storage=storage,
        catalog=catalog,
        artifacts=artifacts,
        orchestrator=orchestrator,
        query=JobQueryService(storage)
    )
