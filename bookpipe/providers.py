"""
External generation providers and artifact storage.

Providers are thin HTTP clients. Anything that goes wrong on the wire is
raised as ``ProviderError`` so the worker can record a failed task.
"""

import base64
import logging
import re
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import requests

from .errors import ProviderError

logger = logging.getLogger(__name__)


@dataclass
class SpeechResult:
    """Audio for one passage plus the provider's per-character alignment."""
    audio: bytes
    alignment: Dict[str, List[Any]] = field(default_factory=dict)
    content_type: str = "audio/mpeg"


class SpeechProvider(Protocol):
    def synthesize(self, text: str) -> SpeechResult: ...


class ImageProvider(Protocol):
    def generate(self, prompt: str, negative_prompt: Optional[str] = None) -> bytes: ...


class ThreadSessions:
    """
    One ``requests.Session`` per calling thread.

    Provider calls run on several threads at once and a Session must not be
    shared between them. An explicitly supplied session is used as is.
    """

    def __init__(self, session: Optional[requests.Session] = None):
        self._fixed = session
        self._local = threading.local()

    def get(self) -> requests.Session:
        if self._fixed is not None:
            return self._fixed
        session = getattr(self._local, "session", None)
        if session is None:
            session = requests.Session()
            self._local.session = session
        return session


def _post_json(session: requests.Session, provider: str, url: str, payload: Dict[str, Any],
               headers: Optional[Dict[str, str]], timeout: float) -> Dict[str, Any]:
    try:
        response = session.post(url, json=payload, headers=headers, timeout=timeout)
    except requests.RequestException as e:
        raise ProviderError(provider, f"request failed: {e}") from e

    if response.status_code != 200:
        raise ProviderError(provider, f"HTTP {response.status_code}: {response.text[:200]}")

    try:
        return response.json()
    except ValueError as e:
        raise ProviderError(provider, "response was not JSON") from e


class ElevenLabsSpeechProvider:
    """Speech synthesis through the ElevenLabs ``with-timestamps`` endpoint."""

    name = "elevenlabs"
    API_ROOT = "https://api.elevenlabs.io/v1"

    def __init__(
        self,
        api_key: Optional[str],
        voice_id: str,
        model_id: str = "eleven_multilingual_v2",
        stability: float = 0.5,
        similarity_boost: float = 0.75,
        timeout: float = 120.0,
        session: Optional[requests.Session] = None
    ):
        self.api_key = api_key
        self.voice_id = voice_id
        self.model_id = model_id
        self.stability = stability
        self.similarity_boost = similarity_boost
        self.timeout = timeout
        self._sessions = ThreadSessions(session)

    def synthesize(self, text: str) -> SpeechResult:
        """
        Synthesize ``text`` and return audio with character alignment.

        Raises:
            ProviderError: On missing credentials, transport or API errors,
                or a malformed response
        """
        if not self.api_key:
            raise ProviderError(self.name, "ELEVENLABS_API_KEY is not set")

        logger.debug("Synthesizing %d characters", len(text))
        data = _post_json(
            self._sessions.get(),
            self.name,
            f"{self.API_ROOT}/text-to-speech/{self.voice_id}/with-timestamps",
            {
                'text': text,
                'model_id': self.model_id,
                'voice_settings': {
                    'stability': self.stability,
                    'similarity_boost': self.similarity_boost,
                },
            },
            {'Content-Type': 'application/json', 'xi-api-key': self.api_key},
            self.timeout
        )

        try:
            audio = base64.b64decode(data['audio_base64'])
            alignment = data['alignment']
        except (KeyError, TypeError, ValueError) as e:
            raise ProviderError(self.name, f"malformed response: {e}") from e

        return SpeechResult(audio=audio, alignment=alignment or {})


class StableDiffusionImageProvider:
    """Image generation through a Stable Diffusion WebUI ``txt2img`` endpoint."""

    name = "stable-diffusion"

    def __init__(
        self,
        base_url: str = "http://localhost:7860",
        steps: int = 30,
        width: int = 512,
        height: int = 768,
        default_negative_prompt: str = "",
        timeout: float = 300.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = base_url.rstrip('/')
        self.steps = steps
        self.width = width
        self.height = height
        self.default_negative_prompt = default_negative_prompt
        self.timeout = timeout
        self._sessions = ThreadSessions(session)

    def generate(self, prompt: str, negative_prompt: Optional[str] = None) -> bytes:
        """
        Render one image for ``prompt``.

        Raises:
            ProviderError: On transport or API errors, or an empty response
        """
        data = _post_json(
            self._sessions.get(),
            self.name,
            f"{self.base_url}/sdapi/v1/txt2img",
            {
                'prompt': prompt,
                'negative_prompt': negative_prompt or self.default_negative_prompt,
                'steps': self.steps,
                'width': self.width,
                'height': self.height,
            },
            None,
            self.timeout
        )

        images = data.get('images') or []
        if not images:
            raise ProviderError(self.name, "no image returned")

        try:
            return base64.b64decode(images[0])
        except ValueError as e:
            raise ProviderError(self.name, f"undecodable image: {e}") from e


_UNSAFE_NAME = re.compile(r'[^A-Za-z0-9._-]+')


class ArtifactStore:
    """
    Local directory holding generated audio and images.

    References returned by ``put`` are absolute file paths.
    """

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, name: str) -> Path:
        safe = _UNSAFE_NAME.sub('_', name).lstrip('.')
        if not safe:
            raise ValueError(f"Invalid artifact name: {name!r}")
        return self.root / safe

    def put(self, name: str, data: bytes) -> str:
        path = self._path(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".part")
        tmp_path.write_bytes(data)
        tmp_path.replace(path)
        return str(path)

    def exists(self, name: str) -> bool:
        return self._path(name).exists()

    def reference(self, name: str) -> str:
        return str(self._path(name))
