"""Runtime configuration for bookpipe.

Values come from environment variables so the web service, the CLI and the
tests can share one loader.
"""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional


def _default_home() -> Path:
    return Path.home() / ".bookpipe"


@dataclass
class PipelineConfig:
    """Configuration for job orchestration and the providers behind it.

    Attributes:
        db_path: SQLite database file (default: ~/.bookpipe/jobs.db)
        max_workers: Size of the worker pool shared by all jobs (default: 4)
        task_timeout: Seconds a single task may run before it counts as failed
        persist_retries: Attempts for a counter write before giving up
        persist_backoff: Seconds between counter write attempts
        artifact_dir: Directory where generated audio and images are written
        elevenlabs_api_key: API key for the speech provider
        elevenlabs_voice_id: Voice used for narration
        elevenlabs_model_id: Speech model identifier
        sd_webui_url: Base URL of the Stable Diffusion WebUI
        skip_existing_audio: Reuse audio and word timestamps already produced
            for a passage instead of synthesizing it again
    """
    db_path: Optional[str] = None
    max_workers: int = 4
    task_timeout: float = 120.0
    persist_retries: int = 3
    persist_backoff: float = 0.05
    artifact_dir: Optional[str] = None
    elevenlabs_api_key: Optional[str] = None
    elevenlabs_voice_id: str = "pqHfZKP75CvOlQylNhV4"
    elevenlabs_model_id: str = "eleven_multilingual_v2"
    sd_webui_url: str = "http://localhost:7860"
    skip_existing_audio: bool = True

    def __post_init__(self):
        """Fill in path defaults and reject nonsensical values."""
        if self.db_path is None:
            home = _default_home()
            home.mkdir(parents=True, exist_ok=True)
            self.db_path = str(home / "jobs.db")
        if self.artifact_dir is None:
            self.artifact_dir = str(_default_home() / "artifacts")
        if self.max_workers < 1:
            raise ValueError(f"max_workers must be at least 1, got {self.max_workers}")
        if self.task_timeout <= 0:
            raise ValueError(f"task_timeout must be positive, got {self.task_timeout}")
        if self.persist_retries < 1:
            raise ValueError(f"persist_retries must be at least 1, got {self.persist_retries}")

    @classmethod
    def from_env(cls):
        """Load configuration from environment variables.

        Environment variables:
            BOOKPIPE_DB_PATH: SQLite database path
            BOOKPIPE_MAX_WORKERS: Worker pool size (integer)
            BOOKPIPE_TASK_TIMEOUT: Per-task timeout in seconds (float)
            BOOKPIPE_PERSIST_RETRIES: Counter write attempts (integer)
            BOOKPIPE_ARTIFACT_DIR: Output directory for generated artifacts
            ELEVENLABS_API_KEY: Speech provider API key
            ELEVENLABS_VOICE_ID: Speech provider voice
            ELEVENLABS_MODEL_ID: Speech provider model
            SD_WEBUI_URL: Image provider base URL
            BOOKPIPE_SKIP_EXISTING_AUDIO: Reuse existing narration (true/false)

        Returns:
            PipelineConfig instance with values from environment
        """
        return cls(
            db_path=os.getenv('BOOKPIPE_DB_PATH') or None,
            max_workers=int(os.getenv('BOOKPIPE_MAX_WORKERS', '4')),
            task_timeout=float(os.getenv('BOOKPIPE_TASK_TIMEOUT', '120')),
            persist_retries=int(os.getenv('BOOKPIPE_PERSIST_RETRIES', '3')),
            artifact_dir=os.getenv('BOOKPIPE_ARTIFACT_DIR') or None,
            elevenlabs_api_key=os.getenv('ELEVENLABS_API_KEY') or None,
            elevenlabs_voice_id=os.getenv('ELEVENLABS_VOICE_ID', cls.elevenlabs_voice_id),
            elevenlabs_model_id=os.getenv('ELEVENLABS_MODEL_ID', cls.elevenlabs_model_id),
            sd_webui_url=os.getenv('SD_WEBUI_URL', cls.sd_webui_url),
            skip_existing_audio=os.getenv('BOOKPIPE_SKIP_EXISTING_AUDIO', 'true').lower() in ('true', '1', 'yes'),
        )
