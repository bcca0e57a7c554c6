"""
Shared pytest fixtures and configuration for bookpipe tests
"""
import sys
import tempfile
import threading
import time
from pathlib import Path

import pytest
from ebooklib import epub

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from bookpipe.documents import DocumentCatalog
from bookpipe.errors import ProviderError
from bookpipe.jobs.manager import JobOrchestrator
from bookpipe.jobs.models import JobKind
from bookpipe.jobs.storage import JobStorage, MemoryJobStorage
from bookpipe.jobs.worker import TaskExecutor
from bookpipe.providers import SpeechResult


class ScriptedExecutor(TaskExecutor):
    """
    Executor whose behaviour is decided per task index.

    ``fail`` indices raise ProviderError, ``crash`` indices raise RuntimeError,
    ``slow`` maps indices to a sleep in seconds. When ``gate`` is set, every
    task waits on it after signalling ``started``.
    """

    name = "scripted"

    def __init__(self, fail=(), crash=(), slow=None, gate=None):
        self.fail = set(fail)
        self.crash = set(crash)
        self.slow = dict(slow or {})
        self.gate = gate
        self.started = threading.Event()
        self.calls = []
        self._lock = threading.Lock()

    def execute(self, task):
        with self._lock:
            self.calls.append(task.index)
        self.started.set()
        if self.gate is not None:
            self.gate.wait(10)
        if task.index in self.slow:
            time.sleep(self.slow[task.index])
        if task.index in self.fail:
            raise ProviderError("scripted", f"task {task.index} failed")
        if task.index in self.crash:
            raise RuntimeError(f"task {task.index} crashed")
        return f"artifact-{task.index}"

    @property
    def call_count(self):
        with self._lock:
            return len(self.calls)


class StubSpeechProvider:
    """Speech provider returning one evenly spaced timing per character."""

    def __init__(self, step=0.1, fail_on=None):
        self.step = step
        self.fail_on = fail_on
        self.requests = []

    def synthesize(self, text):
        self.requests.append(text)
        if self.fail_on is not None and self.fail_on in text:
            raise ProviderError("stub-speech", "synthesis rejected")
        starts = [round(i * self.step, 3) for i in range(len(text))]
        ends = [round((i + 1) * self.step, 3) for i in range(len(text))]
        return SpeechResult(
            audio=b"ID3" + text.encode("utf-8"),
            alignment={
                'characters': list(text),
                'character_start_times_seconds': starts,
                'character_end_times_seconds': ends,
            }
        )


class StubImageProvider:
    """Image provider returning fixed PNG bytes."""

    def __init__(self):
        self.prompts = []

    def generate(self, prompt, negative_prompt=None):
        self.prompts.append(prompt)
        return b"\x89PNG\r\n\x1a\n" + prompt[:16].encode("utf-8")


@pytest.fixture
def temp_dir():
    """Temporary directory for test files"""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def memory_storage():
    """In-memory job store"""
    return MemoryJobStorage()


@pytest.fixture
def sqlite_storage(temp_dir):
    """SQLite job store in a temporary directory"""
    storage = JobStorage(str(temp_dir / "jobs.db"))
    yield storage
    storage.close()


@pytest.fixture
def scripted_executor():
    """Factory for ScriptedExecutor instances"""
    return ScriptedExecutor


@pytest.fixture
def make_orchestrator(memory_storage):
    """
    Factory building orchestrators over the in-memory store.

    Every orchestrator built is shut down after the test.
    """
    built = []

    def factory(executor=None, storage=None, kind=JobKind.NARRATE, **kwargs):
        executors = {kind: executor} if executor is not None else {}
        orchestrator = JobOrchestrator(
            storage if storage is not None else memory_storage,
            executors=executors,
            **kwargs
        )
        built.append(orchestrator)
        return orchestrator

    yield factory

    for orchestrator in built:
        orchestrator.shutdown(wait=False)


@pytest.fixture
def stub_speech():
    return StubSpeechProvider()


@pytest.fixture
def stub_image():
    return StubImageProvider()


@pytest.fixture
def sample_catalog():
    """Catalog holding one document with two chapters; the first has two scenes"""
    catalog = DocumentCatalog()
    document = catalog.add_document(
        "The Lighthouse",
        [
            ("Chapter 1", [
                "The keeper climbed the stairs.",
                "Fog rolled in from the bay.",
                "* * *",
                "Morning came without the ferry.",
            ]),
            ("Chapter 2", [
                "A letter arrived from the mainland.",
            ]),
        ],
        author="Test Author"
    )
    return catalog, document


@pytest.fixture
def simple_epub(temp_dir):
    """Create a simple EPUB file for testing"""
    book = epub.EpubBook()

    # Metadata
    book.set_identifier('test-simple-001')
    book.set_title('Simple Test Book')
    book.set_language('en')
    book.add_author('Test Author')

    c1 = epub.EpubHtml(title='Chapter 1', file_name='chapter1.xhtml', lang='en')
    c1.content = (
        '<html><body><h1>Chapter 1</h1>'
        '<p>Test content.</p><p>More test content.</p>'
        '<p>***</p>'
        '<p>A new scene begins.</p>'
        '</body></html>'
    )

    c2 = epub.EpubHtml(title='Chapter 2', file_name='chapter2.xhtml', lang='en')
    c2.content = '<html><body><h1>Chapter 2</h1><p>The end.</p></body></html>'

    book.add_item(c1)
    book.add_item(c2)
    book.toc = (
        epub.Link('chapter1.xhtml', 'Chapter 1', 'ch1'),
        epub.Link('chapter2.xhtml', 'Chapter 2', 'ch2'),
    )
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ['nav', c1, c2]

    epub_path = temp_dir / 'simple_test.epub'
    epub.write_epub(str(epub_path), book)

    return epub_path


@pytest.fixture
def epub_with_front_matter(temp_dir):
    """Create an EPUB with various front matter chapters"""
    book = epub.EpubBook()

    book.set_identifier('test-frontmatter-001')
    book.set_title('Book With Front Matter')
    book.set_language('en')
    book.add_author('Test Author')

    chapters = []

    # Copyright (should be skipped)
    c1 = epub.EpubHtml(title='Copyright', file_name='copyright.xhtml', lang='en')
    c1.content = '<html><body><h1>Copyright</h1><p>2024 Test Author</p></body></html>'
    chapters.append(c1)

    # TOC (should be skipped)
    c2 = epub.EpubHtml(title='Table of Contents', file_name='toc.xhtml', lang='en')
    c2.content = '<html><body><h1>Contents</h1><p>Chapter 1... 1</p></body></html>'
    chapters.append(c2)

    # Dedication (should be skipped)
    c3 = epub.EpubHtml(title='Dedication', file_name='dedication.xhtml', lang='en')
    c3.content = '<html><body><h1>Dedication</h1><p>For my family</p></body></html>'
    chapters.append(c3)

    # Prologue (should be KEPT)
    c4 = epub.EpubHtml(title='Prologue', file_name='prologue.xhtml', lang='en')
    c4.content = '<html><body><h1>Prologue</h1><p>The story begins here with important background.</p></body></html>'
    chapters.append(c4)

    # Chapter 1 (should be KEPT)
    c5 = epub.EpubHtml(title='Chapter 1', file_name='chapter1.xhtml', lang='en')
    c5.content = '<html><body><h1>Chapter 1</h1><p>The main story starts here.</p></body></html>'
    chapters.append(c5)

    for chapter in chapters:
        book.add_item(chapter)

    book.toc = tuple(
        epub.Link(c.file_name, c.title, f'ch{i}')
        for i, c in enumerate(chapters)
    )

    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = ['nav'] + chapters

    epub_path = temp_dir / 'frontmatter_test.epub'
    epub.write_epub(str(epub_path), book)

    return epub_path
