import pytest

from notebridge.utils.chunk import split_text_into_chunks


class TestSplitTextIntoChunks:
    def test_empty(self):
        assert split_text_into_chunks("") == []

    def test_under_limit_single_chunk(self):
        assert split_text_into_chunks("  hello  ", max_len=100) == ["  hello  "]

    def test_exactly_at_limit(self):
        text = "a" * 100
        assert split_text_into_chunks(text, max_len=100) == [text]

    def test_one_over_limit(self):
        text = "a" * 101
        chunks = split_text_into_chunks(text, max_len=100)
        assert chunks == ["a" * 100, "a"]

    def test_hard_cut_without_whitespace(self):
        text = "x" * 250
        chunks = split_text_into_chunks(text, max_len=100)
        assert [len(c) for c in chunks] == [100, 100, 50]
        assert "".join(chunks) == text

    def test_prefers_newline_in_tail_of_window(self):
        text = "a" * 80 + "\n" + "b" * 50
        chunks = split_text_into_chunks(text, max_len=100)
        assert chunks[0] == "a" * 80 + "\n"
        assert "".join(chunks) == text

    def test_newline_preferred_over_later_space(self):
        text = "a" * 70 + "\n" + "b" * 20 + " " + "c" * 30
        chunks = split_text_into_chunks(text, max_len=100)
        assert chunks[0] == "a" * 70 + "\n"

    def test_falls_back_to_whitespace(self):
        text = "word " * 50
        chunks = split_text_into_chunks(text, max_len=23)
        assert all(len(c) <= 23 for c in chunks)
        assert all(c.endswith(" ") for c in chunks)
        assert "".join(chunks) == text

    @pytest.mark.parametrize("max_len", [1, 7, 64, 3500])
    def test_concatenation_reproduces_input(self, max_len):
        text = ("第一段内容，包含中文和 English words.\n\n" * 40) + "结尾" * 300
        chunks = split_text_into_chunks(text, max_len=max_len)
        assert "".join(chunks) == text
        assert all(0 < len(c) <= max_len for c in chunks)

    def test_invalid_max_len(self):
        with pytest.raises(ValueError):
            split_text_into_chunks("abc", max_len=0)
