"""
Character-to-word alignment for synthesized speech.

Speech providers report one start/end time per character of the text they
spoke. Readers highlight whole words, so the per-character arrays are folded
into per-word timestamps here.
"""

from dataclasses import dataclass, asdict
from typing import Any, Dict, List, Mapping, Optional, Sequence


@dataclass(frozen=True)
class WordTimestamp:
    """Timing of one spoken word within a passage."""
    word: str
    start_time: float
    end_time: float
    passage_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def split_words(text: str) -> List[str]:
    """Split passage text on whitespace, dropping empty tokens."""
    return text.split()


def map_word_timestamps(
    words: Sequence[str],
    start_times: Sequence[float],
    end_times: Sequence[float],
    passage_id: Optional[str] = None
) -> List[WordTimestamp]:
    """
    Fold per-character timings into per-word timestamps.

    The character arrays are indexed over the original text, which is assumed
    to separate consecutive words by exactly one character. Runs of
    whitespace shift every later word; that drift is not corrected.

    Args:
        words: Words in spoken order
        start_times: Start time of each character, in seconds
        end_times: End time of each character, in seconds
        passage_id: Passage the words belong to

    Returns:
        One timestamp per word, stopping at the first word whose characters
        run past the end of the alignment data
    """
    timestamps = []
    available = min(len(start_times), len(end_times))
    char_index = 0

    for word in words:
        length = len(word)
        if char_index + length > available:
            break

        timestamps.append(WordTimestamp(
            word=word,
            start_time=start_times[char_index],
            end_time=end_times[char_index + length - 1],
            passage_id=passage_id
        ))
        char_index += length + 1

    return timestamps


def map_alignment(
    text: str,
    alignment: Mapping[str, Sequence[Any]],
    passage_id: Optional[str] = None
) -> List[WordTimestamp]:
    """
    Map a provider alignment payload onto the words of ``text``.

    Args:
        text: Passage text that was synthesized
        alignment: Payload with ``character_start_times_seconds`` and
            ``character_end_times_seconds`` arrays
        passage_id: Passage the words belong to

    Returns:
        List of word timestamps
    """
    return map_word_timestamps(
        split_words(text),
        alignment.get('character_start_times_seconds') or [],
        alignment.get('character_end_times_seconds') or [],
        passage_id=passage_id
    )
