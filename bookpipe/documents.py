"""
Document catalog and target resolution.

Documents are split into chapters, chapters into scenes and scenes into
passages. The catalog answers one question for the orchestrator: which tasks
does a job over a given target consist of?
"""

import threading
import uuid
import warnings
from pathlib import Path
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence

from bs4 import BeautifulSoup
from ebooklib import epub, ITEM_DOCUMENT

from .errors import NotFoundError, ValidationError
from .jobs.models import JobKind, TargetType, TaskSpec, parse_enum

warnings.filterwarnings("ignore", category=UserWarning, module='ebooklib')
warnings.filterwarnings("ignore", category=FutureWarning, module='ebooklib')

# Paragraphs consisting only of these mark a scene break
SCENE_BREAK_MARKERS = {'***', '* * *', '#', '~', '---', '§'}

FRONT_MATTER_TITLES = {
    'copy', 'copyright', 'title page', 'cover', 'contents', 'table of contents', 'dedication'
}

# Prompt excerpts are cut to this many characters
PROMPT_EXCERPT_CHARS = 600


def _new_id(prefix: str, key: Optional[str] = None) -> str:
    # Keyed ids are stable across processes loading the same source
    value = uuid.uuid4() if key is None else uuid.uuid5(uuid.NAMESPACE_URL, key)
    return f"{prefix}-{value.hex[:12]}"


@dataclass
class Passage:
    passage_id: str
    chapter_id: str
    scene_id: str
    order: int
    text: str


@dataclass
class Scene:
    scene_id: str
    chapter_id: str
    order: int
    passage_ids: List[str] = field(default_factory=list)


@dataclass
class Chapter:
    chapter_id: str
    document_id: str
    title: str
    order: int
    scene_ids: List[str] = field(default_factory=list)
    passage_ids: List[str] = field(default_factory=list)


@dataclass
class Document:
    document_id: str
    title: str
    author: Optional[str] = None
    chapter_ids: List[str] = field(default_factory=list)


def is_scene_break(paragraph: str) -> bool:
    return paragraph.strip() in SCENE_BREAK_MARKERS


def is_front_matter(title: str) -> bool:
    lowered = title.strip().lower()
    return lowered in FRONT_MATTER_TITLES or lowered.startswith('by ')


class DocumentCatalog:
    """
    In-memory registry of documents, chapters, scenes and passages.

    Thread-safe: registration and lookups share one lock.
    """

    def __init__(self):
        self._documents: Dict[str, Document] = {}
        self._chapters: Dict[str, Chapter] = {}
        self._scenes: Dict[str, Scene] = {}
        self._passages: Dict[str, Passage] = {}
        self._lock = threading.RLock()

    # Registration

    def add_document(
        self,
        title: str,
        chapters: Sequence[tuple],
        author: Optional[str] = None,
        source_key: Optional[str] = None
    ) -> Document:
        """
        Register a document.

        Args:
            title: Document title
            chapters: ``(chapter_title, paragraphs)`` pairs in reading order;
                scene-break paragraphs split a chapter into scenes
            author: Optional author name
            source_key: Stable name of the source (e.g. a file path); when set,
                every id is derived from it instead of drawn at random

        Returns:
            The registered Document
        """
        with self._lock:
            document = Document(document_id=_new_id("doc", source_key), title=title, author=author)
            if document.document_id in self._documents:
                return self._documents[document.document_id]
            for order, (chapter_title, paragraphs) in enumerate(chapters, 1):
                key = f"{source_key}#ch{order}" if source_key else None
                chapter = self._add_chapter(document.document_id, chapter_title, order, paragraphs, key)
                document.chapter_ids.append(chapter.chapter_id)
            self._documents[document.document_id] = document
            return document

    def _add_chapter(self, document_id: str, title: str, order: int, paragraphs: Iterable[str],
                     key: Optional[str] = None) -> Chapter:
        chapter = Chapter(chapter_id=_new_id("ch", key), document_id=document_id, title=title, order=order)
        scene = None

        for paragraph in paragraphs:
            if is_scene_break(paragraph):
                scene = None
                continue
            text = paragraph.strip()
            if not text:
                continue

            if scene is None:
                scene_order = len(chapter.scene_ids) + 1
                scene = Scene(scene_id=_new_id("sc", key and f"{key}-sc{scene_order}"),
                              chapter_id=chapter.chapter_id, order=scene_order)
                chapter.scene_ids.append(scene.scene_id)
                self._scenes[scene.scene_id] = scene

            passage_order = len(chapter.passage_ids) + 1
            passage = Passage(
                passage_id=_new_id("p", key and f"{key}-p{passage_order}"),
                chapter_id=chapter.chapter_id,
                scene_id=scene.scene_id,
                order=passage_order,
                text=text
            )
            scene.passage_ids.append(passage.passage_id)
            chapter.passage_ids.append(passage.passage_id)
            self._passages[passage.passage_id] = passage

        self._chapters[chapter.chapter_id] = chapter
        return chapter

    def load_epub(self, epub_path: str) -> Document:
        """
        Register the chapters of an EPUB file.

        Each spine document becomes one chapter, titled by its first heading.
        Front matter (cover, copyright, contents) is skipped.
        """
        book = epub.read_epub(epub_path)

        title = _first_metadata(book, 'title') or "Untitled"
        author = _first_metadata(book, 'creator')

        chapters = []
        for item_id, _linear in book.spine:
            item = book.get_item_with_id(item_id)
            if item is None or item.get_type() != ITEM_DOCUMENT:
                continue

            soup = BeautifulSoup(item.get_content(), "html.parser")
            heading = soup.find(['h1', 'h2', 'h3'])
            chapter_title = heading.get_text(strip=True) if heading else (item.title or item.get_name())
            paragraphs = [p.get_text(" ", strip=True) for p in soup.find_all('p')]
            soup.decompose()

            if is_front_matter(chapter_title) or not any(p.strip() for p in paragraphs):
                continue
            chapters.append((chapter_title, paragraphs))

        return self.add_document(title, chapters, author=author,
                                 source_key=str(Path(epub_path).resolve()))

    # Lookups

    def get_document(self, document_id: str) -> Document:
        with self._lock:
            if document_id not in self._documents:
                raise NotFoundError("document", document_id)
            return self._documents[document_id]

    def get_chapter(self, chapter_id: str) -> Chapter:
        with self._lock:
            if chapter_id not in self._chapters:
                raise NotFoundError("chapter", chapter_id)
            return self._chapters[chapter_id]

    def get_scene(self, scene_id: str) -> Scene:
        with self._lock:
            if scene_id not in self._scenes:
                raise NotFoundError("scene", scene_id)
            return self._scenes[scene_id]

    def get_passage(self, passage_id: str) -> Passage:
        with self._lock:
            if passage_id not in self._passages:
                raise NotFoundError("passage", passage_id)
            return self._passages[passage_id]

    def documents(self) -> List[Document]:
        with self._lock:
            return list(self._documents.values())

    def passages_under(self, target_type: TargetType, target_id: str) -> List[Passage]:
        """Passages contained in a target, in reading order."""
        with self._lock:
            if target_type == TargetType.DOCUMENT:
                document = self.get_document(target_id)
                ids = [pid for cid in document.chapter_ids for pid in self._chapters[cid].passage_ids]
            elif target_type == TargetType.CHAPTER:
                ids = list(self.get_chapter(target_id).passage_ids)
            elif target_type == TargetType.SCENE:
                ids = list(self.get_scene(target_id).passage_ids)
            else:
                raise ValidationError(f"Unsupported target type: {target_type}")
            return [self._passages[pid] for pid in ids]

    # Target resolution

    def resolve_tasks(self, target_type, target_id: str, kind) -> List[TaskSpec]:
        """
        Expand a target into the tasks of a job.

        ``narrate`` yields one task per passage under the target.
        ``illustrate`` yields one task per chapter of a document, one per
        scene of a chapter, or a single task for a scene.

        Raises:
            NotFoundError: If the target does not exist
            ValidationError: If the target type or kind is unknown
        """
        target_type = parse_enum(TargetType, target_type, "target type")
        kind = parse_enum(JobKind, kind, "job kind")

        with self._lock:
            if kind == JobKind.NARRATE:
                return [
                    TaskSpec(subject_id=p.passage_id, payload={'text': p.text})
                    for p in self.passages_under(target_type, target_id)
                ]

            if target_type == TargetType.DOCUMENT:
                document = self.get_document(target_id)
                return [
                    self._illustration_spec(cid, self._chapters[cid].passage_ids, self._chapters[cid].title)
                    for cid in document.chapter_ids
                ]
            if target_type == TargetType.CHAPTER:
                chapter = self.get_chapter(target_id)
                return [
                    self._illustration_spec(sid, self._scenes[sid].passage_ids,
                                            f"{chapter.title}, scene {self._scenes[sid].order}")
                    for sid in chapter.scene_ids
                ]
            scene = self.get_scene(target_id)
            chapter = self._chapters[scene.chapter_id]
            return [self._illustration_spec(scene.scene_id, scene.passage_ids,
                                            f"{chapter.title}, scene {scene.order}")]

    def _illustration_spec(self, subject_id: str, passage_ids: Sequence[str], title: str) -> TaskSpec:
        excerpt = " ".join(self._passages[pid].text for pid in passage_ids)
        if len(excerpt) > PROMPT_EXCERPT_CHARS:
            excerpt = excerpt[:PROMPT_EXCERPT_CHARS].rsplit(' ', 1)[0]
        prompt = f"Book illustration for {title}. {excerpt}".strip()
        return TaskSpec(subject_id=subject_id, payload={'prompt': prompt, 'title': title})


def _first_metadata(book: epub.EpubBook, name: str) -> Optional[str]:
    values = book.get_metadata('DC', name)
    if values and values[0]:
        return values[0][0]
    return None
