"""Tests for line splitting of chunked output."""

from __future__ import annotations

from planexec.stream import ChunkDecoder, LineSplitter


def _split_all(chunks: list[str]) -> list[str]:
    splitter = LineSplitter()
    lines: list[str] = []
    for chunk in chunks:
        lines.extend(splitter.split(chunk))
    lines.extend(splitter.flush())
    return lines


class TestLineSplitter:
    """Tests for LineSplitter."""

    def test_complete_lines(self) -> None:
        """Test a chunk made of complete lines."""
        splitter = LineSplitter()
        assert splitter.split("one\ntwo\n") == ["one", "two"]
        assert splitter.pending == ""

    def test_partial_line_held_back(self) -> None:
        """Test that a trailing fragment waits for the next chunk."""
        splitter = LineSplitter()
        assert splitter.split('{"type": "ass') == []
        assert splitter.pending == '{"type": "ass'
        assert splitter.split('istant"}\n') == ['{"type": "assistant"}']

    def test_chunk_boundaries_do_not_matter(self) -> None:
        """Test that every split of the same stream yields the same lines."""
        stream = 'first line\n{"a": 1}\n\nlast without newline'
        expected = _split_all([stream])

        for cut in range(len(stream) + 1):
            assert _split_all([stream[:cut], stream[cut:]]) == expected

        assert _split_all(list(stream)) == expected

    def test_flush_returns_fragment_once(self) -> None:
        """Test that flush drains the buffered fragment."""
        splitter = LineSplitter()
        splitter.split("tail")
        assert splitter.flush() == ["tail"]
        assert splitter.flush() == []

    def test_empty_chunk(self) -> None:
        """Test that empty chunks are ignored."""
        splitter = LineSplitter()
        assert splitter.split("") == []

    def test_crlf_line_endings(self) -> None:
        """Test that CRLF endings yield the same lines as LF, even split between chunks."""
        splitter = LineSplitter()
        assert splitter.split("one\r\ntwo\r") == ["one"]
        assert splitter.split("\nthree\r") == ["two"]
        assert splitter.flush() == ["three"]


class TestChunkDecoder:
    """Tests for ChunkDecoder."""

    def test_multibyte_character_split_across_reads(self) -> None:
        """Test that a UTF-8 sequence split between reads decodes intact."""
        data = "héllo ✓\n".encode("utf-8")
        decoder = ChunkDecoder()

        text = "".join(decoder.decode(data[i:i + 1]) for i in range(len(data)))
        text += decoder.finish()

        assert text == "héllo ✓\n"
