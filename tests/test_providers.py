#!/usr/bin/env python3
"""Unit tests for providers, artifact storage and task executors."""

import base64
import threading
import time
import unittest
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import Mock

import pytest
import requests

from bookpipe.alignment import WordTimestamp
from bookpipe.errors import ProviderError, TaskTimeoutError
from bookpipe.jobs.models import JobKind, TaskDescriptor, TaskOutcome
from bookpipe.jobs.storage import MemoryJobStorage
from bookpipe.jobs.worker import (
    CancellationToken,
    ImageTaskExecutor,
    SpeechTaskExecutor,
    WorkerPool,
    execute_task,
    run_with_timeout,
)
from bookpipe.providers import (
    ArtifactStore,
    ElevenLabsSpeechProvider,
    SpeechResult,
    StableDiffusionImageProvider,
    ThreadSessions,
)


def _response(status_code=200, payload=None, text=""):
    response = Mock()
    response.status_code = status_code
    response.text = text
    if isinstance(payload, Exception):
        response.json.side_effect = payload
    else:
        response.json.return_value = payload
    return response


def _task(kind=JobKind.NARRATE, subject_id="p-1", payload=None, index=0):
    return TaskDescriptor(job_id="job-1", index=index, kind=kind, subject_id=subject_id, payload=payload or {})


class TestElevenLabsSpeechProvider(unittest.TestCase):
    """Test the speech provider HTTP client."""

    def setUp(self):
        self.session = Mock()
        self.provider = ElevenLabsSpeechProvider("key-123", "voice-1", session=self.session)

    def test_synthesize(self):
        alignment = {
            'characters': list("Hi"),
            'character_start_times_seconds': [0.0, 0.1],
            'character_end_times_seconds': [0.1, 0.2],
        }
        self.session.post.return_value = _response(payload={
            'audio_base64': base64.b64encode(b"mp3-bytes").decode(),
            'alignment': alignment,
        })

        result = self.provider.synthesize("Hi")

        self.assertEqual(result.audio, b"mp3-bytes")
        self.assertEqual(result.alignment, alignment)

        url = self.session.post.call_args.args[0]
        kwargs = self.session.post.call_args.kwargs
        self.assertEqual(url, "https://api.elevenlabs.io/v1/text-to-speech/voice-1/with-timestamps")
        self.assertEqual(kwargs['headers']['xi-api-key'], "key-123")
        self.assertEqual(kwargs['json']['model_id'], "eleven_multilingual_v2")
        self.assertEqual(kwargs['json']['voice_settings'], {'stability': 0.5, 'similarity_boost': 0.75})

    def test_missing_api_key(self):
        provider = ElevenLabsSpeechProvider(None, "voice-1", session=self.session)
        with self.assertRaises(ProviderError):
            provider.synthesize("Hi")
        self.session.post.assert_not_called()

    def test_http_error(self):
        self.session.post.return_value = _response(status_code=429, text="rate limited")
        with self.assertRaises(ProviderError) as ctx:
            self.provider.synthesize("Hi")
        self.assertIn("429", str(ctx.exception))

    def test_transport_error(self):
        self.session.post.side_effect = requests.ConnectionError("refused")
        with self.assertRaises(ProviderError) as ctx:
            self.provider.synthesize("Hi")
        self.assertIn("request failed", str(ctx.exception))

    def test_malformed_response(self):
        self.session.post.return_value = _response(payload={'alignment': {}})
        with self.assertRaises(ProviderError):
            self.provider.synthesize("Hi")

    def test_non_json_response(self):
        self.session.post.return_value = _response(payload=ValueError("not json"))
        with self.assertRaises(ProviderError):
            self.provider.synthesize("Hi")


class TestStableDiffusionImageProvider(unittest.TestCase):
    """Test the image provider HTTP client."""

    def test_generate(self):
        session = Mock()
        session.post.return_value = _response(payload={'images': [base64.b64encode(b"png").decode()]})
        provider = StableDiffusionImageProvider("http://sd.local:7860/", session=session)

        self.assertEqual(provider.generate("a lighthouse"), b"png")
        self.assertEqual(session.post.call_args.args[0], "http://sd.local:7860/sdapi/v1/txt2img")
        self.assertEqual(session.post.call_args.kwargs['json']['prompt'], "a lighthouse")

    def test_no_images(self):
        session = Mock()
        session.post.return_value = _response(payload={'images': []})
        provider = StableDiffusionImageProvider(session=session)
        with self.assertRaises(ProviderError):
            provider.generate("a lighthouse")


class TestArtifactStore:
    """Test the local artifact directory"""

    def test_put_and_exists(self, temp_dir):
        store = ArtifactStore(str(temp_dir / "artifacts"))
        reference = store.put("passage_p-1.mp3", b"audio")

        assert store.exists("passage_p-1.mp3")
        assert reference == store.reference("passage_p-1.mp3")
        with open(reference, "rb") as f:
            assert f.read() == b"audio"

    def test_names_are_sanitized(self, temp_dir):
        store = ArtifactStore(str(temp_dir))
        reference = store.put("../escape/../../x.png", b"data")
        assert reference.startswith(str(temp_dir))

    def test_empty_name_rejected(self, temp_dir):
        store = ArtifactStore(str(temp_dir))
        with pytest.raises(ValueError):
            store.put("...", b"data")


class TestThreadSessions:
    """Test per-thread HTTP sessions"""

    def test_one_session_per_thread(self):
        sessions = ThreadSessions()
        main = sessions.get()
        assert sessions.get() is main

        seen = []
        thread = threading.Thread(target=lambda: seen.append(sessions.get()))
        thread.start()
        thread.join()

        assert isinstance(seen[0], requests.Session)
        assert seen[0] is not main

    def test_supplied_session_is_shared(self):
        session = Mock()
        sessions = ThreadSessions(session)

        seen = []
        thread = threading.Thread(target=lambda: seen.append(sessions.get()))
        thread.start()
        thread.join()

        assert sessions.get() is session
        assert seen == [session]


@pytest.fixture
def calls():
    """Provider call pool"""
    pool = ThreadPoolExecutor(2, thread_name_prefix="test-call")
    yield pool
    pool.shutdown(wait=False)


class TestSpeechTaskExecutor:
    """Test narration of one passage"""

    def test_writes_audio_and_timestamps(self, temp_dir, stub_speech, calls):
        storage = MemoryJobStorage()
        executor = SpeechTaskExecutor(stub_speech, ArtifactStore(str(temp_dir)), storage)

        result = execute_task(executor, _task(payload={'text': "Hi there"}), 5, calls)

        assert result.succeeded
        assert result.artifact.endswith("passage_p-1.mp3")
        stamps = storage.get_word_timestamps("p-1")
        assert [s.word for s in stamps] == ["Hi", "there"]
        assert stamps[0] == WordTimestamp("Hi", 0.0, 0.2, "p-1")
        assert stamps[1].start_time == pytest.approx(0.3)
        assert stamps[1].end_time == pytest.approx(0.8)

    def test_execute_writes_nothing(self, temp_dir, stub_speech):
        storage = MemoryJobStorage()
        artifacts = ArtifactStore(str(temp_dir))
        executor = SpeechTaskExecutor(stub_speech, artifacts, storage)

        produced = executor.execute(_task(payload={'text': "Hi there"}))

        assert isinstance(produced, SpeechResult)
        assert not artifacts.exists(executor.artifact_name("p-1"))
        assert storage.get_word_timestamps("p-1") == []

    def test_skip_existing(self, temp_dir, stub_speech, calls):
        storage = MemoryJobStorage()
        artifacts = ArtifactStore(str(temp_dir))
        executor = SpeechTaskExecutor(stub_speech, artifacts, storage, skip_existing=True)
        task = _task(payload={'text': "Hi there"})

        first = execute_task(executor, task, 5, calls)
        second = execute_task(executor, task, 5, calls)

        assert stub_speech.requests == ["Hi there"]
        assert second.artifact == first.artifact

    def test_empty_text_fails(self, temp_dir, stub_speech):
        executor = SpeechTaskExecutor(stub_speech, ArtifactStore(str(temp_dir)), MemoryJobStorage())
        with pytest.raises(ProviderError):
            executor.execute(_task(payload={'text': "   "}))


class SlowFirstSpeechProvider:
    """The first call is slow and reports times offset by 9 seconds."""

    def __init__(self, delay):
        self.delay = delay
        self.calls = 0
        self.stale_returned = threading.Event()
        self._lock = threading.Lock()

    def synthesize(self, text):
        with self._lock:
            self.calls += 1
            first = self.calls == 1
        offset = 9.0 if first else 0.0
        if first:
            time.sleep(self.delay)
        result = SpeechResult(
            audio=b"late" if first else b"fresh",
            alignment={
                'characters': list(text),
                'character_start_times_seconds': [offset + i * 0.1 for i in range(len(text))],
                'character_end_times_seconds': [offset + (i + 1) * 0.1 for i in range(len(text))],
            }
        )
        if first:
            self.stale_returned.set()
        return result


class TestLateResults:
    """Test that a call returning after its timeout leaves no trace"""

    def test_timed_out_call_does_not_overwrite_rerun(self, temp_dir, calls):
        storage = MemoryJobStorage()
        artifacts = ArtifactStore(str(temp_dir))
        provider = SlowFirstSpeechProvider(delay=0.5)
        executor = SpeechTaskExecutor(provider, artifacts, storage)
        task = _task(payload={'text': "Hi there"})

        timed_out = execute_task(executor, task, 0.1, calls)
        assert timed_out.outcome == TaskOutcome.FAILURE
        assert "did not finish" in timed_out.error

        rerun = execute_task(executor, task, 5, calls)
        assert rerun.succeeded

        assert provider.stale_returned.wait(5)
        time.sleep(0.2)

        stamps = storage.get_word_timestamps("p-1")
        assert stamps[0].start_time == pytest.approx(0.0)
        with open(rerun.artifact, "rb") as f:
            assert f.read() == b"fresh"

    def test_timed_out_call_stores_nothing(self, temp_dir, calls):
        storage = MemoryJobStorage()
        artifacts = ArtifactStore(str(temp_dir))
        provider = SlowFirstSpeechProvider(delay=0.3)
        executor = SpeechTaskExecutor(provider, artifacts, storage)

        result = execute_task(executor, _task(payload={'text': "Hi"}), 0.05, calls)
        assert result.outcome == TaskOutcome.FAILURE

        assert provider.stale_returned.wait(5)
        time.sleep(0.2)

        assert storage.get_word_timestamps("p-1") == []
        assert not artifacts.exists(executor.artifact_name("p-1"))


class TestImageTaskExecutor:
    """Test illustration of one chapter or scene"""

    def test_writes_image(self, temp_dir, stub_image, calls):
        executor = ImageTaskExecutor(stub_image, ArtifactStore(str(temp_dir)))
        result = execute_task(executor, _task(JobKind.ILLUSTRATE, "sc-1", {'prompt': "a storm"}), 5, calls)

        assert result.artifact.endswith("sc-1.png")
        assert stub_image.prompts == ["a storm"]

    def test_missing_prompt(self, temp_dir, stub_image):
        executor = ImageTaskExecutor(stub_image, ArtifactStore(str(temp_dir)))
        with pytest.raises(ProviderError):
            executor.execute(_task(JobKind.ILLUSTRATE, "sc-1", {}))


class TestExecuteTask:
    """Test folding executor results into outcomes"""

    def test_success(self, temp_dir, stub_image, calls):
        executor = ImageTaskExecutor(stub_image, ArtifactStore(str(temp_dir)))
        result = execute_task(executor, _task(JobKind.ILLUSTRATE, "sc-1", {'prompt': "fog"}), 5, calls)

        assert result.outcome == TaskOutcome.SUCCESS
        assert result.succeeded
        assert result.artifact.endswith("sc-1.png")

    def test_provider_error(self, temp_dir, calls):
        speech = Mock()
        speech.synthesize.side_effect = ProviderError("stub", "boom")
        executor = SpeechTaskExecutor(speech, ArtifactStore(str(temp_dir)), MemoryJobStorage())

        result = execute_task(executor, _task(payload={'text': "Hi"}), 5, calls)

        assert result.outcome == TaskOutcome.FAILURE
        assert result.error == "stub: boom"

    def test_no_executor(self, calls):
        result = execute_task(None, _task(), 5, calls)
        assert result.outcome == TaskOutcome.FAILURE
        assert "No executor" in result.error


class TestWorkerHelpers(unittest.TestCase):
    """Test timeouts, cancellation tokens and the worker pool."""

    def setUp(self):
        self.calls = ThreadPoolExecutor(2)
        self.addCleanup(self.calls.shutdown, False)

    def test_run_with_timeout_returns_value(self):
        self.assertEqual(run_with_timeout(self.calls, lambda a, b: a + b, (2, 3), 1.0, "add"), 5)

    def test_run_with_timeout_reraises(self):
        def explode():
            raise KeyError("inner")

        with self.assertRaises(KeyError):
            run_with_timeout(self.calls, explode, (), 1.0, "explode")

    def test_run_with_timeout_expires(self):
        with self.assertRaises(TaskTimeoutError):
            run_with_timeout(self.calls, time.sleep, (1.0,), 0.05, "sleep")

    def test_cancellation_token(self):
        token = CancellationToken()
        self.assertFalse(token.is_cancelled())
        token.cancel()
        self.assertTrue(token.is_cancelled())

    def test_worker_pool_runs_items(self):
        handled = []
        pool = WorkerPool(2, handled.append)
        pool.start()
        for i in range(10):
            pool.submit(i)
        pool.join()
        pool.shutdown()

        self.assertEqual(sorted(handled), list(range(10)))

    def test_worker_pool_survives_handler_errors(self):
        handled = []

        def handler(item):
            if item == 1:
                raise RuntimeError("bad item")
            handled.append(item)

        pool = WorkerPool(1, handler)
        pool.start()
        for i in range(3):
            pool.submit(i)
        pool.join()
        pool.shutdown()

        self.assertEqual(handled, [0, 2])

    def test_worker_pool_rejects_after_shutdown(self):
        pool = WorkerPool(1, lambda item: None)
        pool.start()
        pool.shutdown()
        with self.assertRaises(RuntimeError):
            pool.submit(1)

    def test_worker_pool_size(self):
        with self.assertRaises(ValueError):
            WorkerPool(0, lambda item: None)
