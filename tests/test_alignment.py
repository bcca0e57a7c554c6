"""
Unit tests for character-to-word alignment

Run with: pytest tests/test_alignment.py -v
"""
import pytest

from bookpipe.alignment import WordTimestamp, map_alignment, map_word_timestamps, split_words


class TestMapWordTimestamps:
    """Test suite for folding character timings into words"""

    def test_two_words(self):
        """Each word spans its first start time to its last end time"""
        starts = [0.0, 0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7]
        ends = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6, 0.7, 0.8]

        result = map_word_timestamps(["Hi", "there"], starts, ends)

        assert result == [
            WordTimestamp("Hi", 0.0, 0.2),
            WordTimestamp("there", 0.3, 0.8),
        ]

    def test_separator_timing_is_ignored(self):
        """The space between words contributes to neither word"""
        starts = [0.0, 0.05, 0.1, 0.3, 0.4, 0.5, 0.6, 0.65]
        ends = [0.05, 0.1, 0.3, 0.4, 0.5, 0.6, 0.65, 0.7]

        result = map_word_timestamps(["Hi", "there"], starts, ends)

        assert [(w.word, w.start_time, w.end_time) for w in result] == [
            ("Hi", 0.0, 0.1),
            ("there", 0.3, 0.7),
        ]

    def test_truncated_alignment_drops_last_word(self):
        """Alignment too short for the last word omits it without error"""
        starts = [0.0, 0.1, 0.2, 0.3, 0.4, 0.5]
        ends = [0.1, 0.2, 0.3, 0.4, 0.5, 0.6]

        result = map_word_timestamps(["Hi", "there"], starts, ends)

        assert [w.word for w in result] == ["Hi"]

    def test_word_ending_exactly_at_alignment_end(self):
        starts = [0.0, 0.1, 0.2, 0.3]
        ends = [0.1, 0.2, 0.3, 0.4]

        result = map_word_timestamps(["a", "bc"], starts, ends)

        assert [w.word for w in result] == ["a", "bc"]
        assert result[1].end_time == 0.4

    def test_empty_inputs(self):
        assert map_word_timestamps([], [0.0], [0.1]) == []
        assert map_word_timestamps(["word"], [], []) == []

    def test_mismatched_array_lengths_use_shorter(self):
        """Never index past the shorter of the two arrays"""
        starts = [0.0, 0.1, 0.2, 0.3, 0.4]
        ends = [0.1, 0.2]

        result = map_word_timestamps(["ab", "cd"], starts, ends)

        assert [w.word for w in result] == ["ab"]

    def test_passage_id_is_attached(self):
        result = map_word_timestamps(["x"], [0.0], [0.5], passage_id="p-1")
        assert result[0].passage_id == "p-1"
        assert result[0].to_dict() == {
            'word': "x", 'start_time': 0.0, 'end_time': 0.5, 'passage_id': "p-1"
        }

    def test_start_never_after_end(self):
        text = "one two three four five"
        starts = [i * 0.1 for i in range(len(text))]
        ends = [(i + 1) * 0.1 for i in range(len(text))]

        for stamp in map_word_timestamps(split_words(text), starts, ends):
            assert stamp.start_time <= stamp.end_time


class TestSeparatorDrift:
    """Multi-character separators shift every later word"""

    def test_double_space_desynchronizes_following_words(self):
        text = "Hi  there"
        starts = [float(i) for i in range(len(text))]
        ends = [float(i) + 0.5 for i in range(len(text))]

        result = map_word_timestamps(split_words(text), starts, ends)

        # "there" really starts at index 4; the mapper assumes index 3
        assert result[1].word == "there"
        assert result[1].start_time == 3.0
        assert result[1].end_time == 7.5


class TestMapAlignment:
    """Test mapping a provider alignment payload"""

    def test_provider_payload(self):
        text = "Hello world"
        alignment = {
            'characters': list(text),
            'character_start_times_seconds': [i * 0.1 for i in range(len(text))],
            'character_end_times_seconds': [(i + 1) * 0.1 for i in range(len(text))],
        }

        result = map_alignment(text, alignment, passage_id="p-9")

        assert [w.word for w in result] == ["Hello", "world"]
        assert result[0].start_time == pytest.approx(0.0)
        assert result[0].end_time == pytest.approx(0.5)
        assert result[1].start_time == pytest.approx(0.6)
        assert result[1].end_time == pytest.approx(1.1)
        assert all(w.passage_id == "p-9" for w in result)

    def test_missing_arrays_yield_nothing(self):
        assert map_alignment("Hello world", {}) == []

    @pytest.mark.parametrize("text,expected", [
        ("Hi there", ["Hi", "there"]),
        ("  leading and trailing  ", ["leading", "and", "trailing"]),
        ("tabs\tand\nnewlines", ["tabs", "and", "newlines"]),
        ("", []),
    ])
    def test_split_words(self, text, expected):
        assert split_words(text) == expected
