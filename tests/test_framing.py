"""Tests for JSONL framing."""

import pytest

from cdptap.errors import BufferOverflowError, FrameParseError
from cdptap.ipc.framing import FrameBuffer, parse_frame, to_frame


class TestFrameBuffer:
    """Tests for FrameBuffer."""

    def test_single_complete_frame(self):
        """Test a chunk holding one terminated frame."""
        buffer = FrameBuffer()
        assert buffer.process('{"a":1}\n') == ['{"a":1}']
        assert buffer.pending == ""

    def test_frame_split_across_chunks(self):
        """Test that a frame is only emitted once its newline arrives."""
        buffer = FrameBuffer()
        assert buffer.process('{"type":"sta') == []
        assert buffer.process('tus_request"}') == []
        assert buffer.process("\n") == ['{"type":"status_request"}']

    def test_multiple_frames_in_one_chunk(self):
        """Test several frames and a trailing partial in one chunk."""
        buffer = FrameBuffer()
        lines = buffer.process('{"a":1}\n{"b":2}\n{"c":')
        assert lines == ['{"a":1}', '{"b":2}']
        assert buffer.pending == '{"c":'

    def test_blank_lines_skipped(self):
        """Test that empty and whitespace-only lines are not frames."""
        buffer = FrameBuffer()
        assert buffer.process('\n  \n{"a":1}\n\n') == ['{"a":1}']

    def test_multibyte_character_split_across_byte_chunks(self):
        """Test UTF-8 characters split between byte chunks."""
        buffer = FrameBuffer()
        data = '{"text":"héllo ✓"}\n'.encode("utf-8")
        split = data.index("✓".encode("utf-8")) + 1
        assert buffer.process(data[:split]) == []
        assert buffer.process(data[split:]) == ['{"text":"héllo ✓"}']

    def test_single_byte_feed(self):
        """Test two frames fed one byte at a time come out whole and in order."""
        buffer = FrameBuffer()
        data = '{"a":"é"}\n{"b":2}\n'.encode("utf-8")
        lines = []
        for i in range(len(data)):
            lines.extend(buffer.process(data[i : i + 1]))
        assert lines == ['{"a":"é"}', '{"b":2}']
        assert buffer.pending == ""

    def test_invalid_utf8_yields_unparseable_line(self):
        """Test invalid bytes surface as a bad frame instead of a decode error."""
        buffer = FrameBuffer()
        lines = buffer.process(b'\xff\xfe garbage\n{"a":1}\n')
        assert len(lines) == 2
        with pytest.raises(FrameParseError):
            parse_frame(lines[0])
        assert parse_frame(lines[1]) == {"a": 1}

    def test_overflow_counts_bytes(self):
        """Test the cap applies to encoded bytes, not characters."""
        buffer = FrameBuffer(max_size=16)
        buffer.process("😀" * 4)
        with pytest.raises(BufferOverflowError) as exc:
            buffer.process("😀".encode("utf-8"))
        assert exc.value.buffer_size == 20
        assert buffer.pending == "😀" * 4

    def test_overflow_without_newline(self):
        """Test that an unterminated tail beyond the cap raises."""
        buffer = FrameBuffer(max_size=16)
        buffer.process("x" * 10)
        with pytest.raises(BufferOverflowError) as exc:
            buffer.process("y" * 10)
        assert exc.value.buffer_size == 20
        assert exc.value.max_size == 16
        assert "without newlines" in str(exc.value)

    def test_overflow_discards_offending_chunk(self):
        """Test the buffer keeps its prior contents after an overflow."""
        buffer = FrameBuffer(max_size=16)
        buffer.process("abc")
        with pytest.raises(BufferOverflowError):
            buffer.process("z" * 20)
        assert buffer.pending == "abc"

    def test_overflowing_tail_after_newline(self):
        """Test a huge unterminated tail following a complete frame."""
        buffer = FrameBuffer(max_size=8)
        with pytest.raises(BufferOverflowError):
            buffer.process('{"a":1}\n' + "q" * 20)
        assert buffer.pending == ""

    def test_clear(self):
        """Test clear drops the partial frame."""
        buffer = FrameBuffer()
        buffer.process('{"partial"')
        buffer.clear()
        assert buffer.pending == ""
        assert buffer.process('{"a":1}\n') == ['{"a":1}']


class TestFrameCodec:
    """Tests for to_frame and parse_frame."""

    def test_to_frame_is_compact_and_terminated(self):
        """Test serialization has one trailing newline and no padding."""
        frame = to_frame({"type": "status_request", "sessionId": "s1"})
        assert frame == '{"type":"status_request","sessionId":"s1"}\n'
        assert frame.count("\n") == 1

    def test_to_frame_escapes_embedded_newlines(self):
        """Test that newlines inside strings never split a frame."""
        frame = to_frame({"text": "line1\nline2"})
        assert frame.count("\n") == 1
        assert parse_frame(frame.strip()) == {"text": "line1\nline2"}

    def test_parse_bytes(self):
        """Test parsing a bytes frame."""
        assert parse_frame(b'{"ok":true}') == {"ok": True}

    def test_parse_invalid_json(self):
        """Test invalid JSON raises FrameParseError with a preview."""
        with pytest.raises(FrameParseError) as exc:
            parse_frame("{not json")
        assert "{not json" in str(exc.value)
        assert exc.value.kind == "parse"

    def test_parse_error_preview_truncated(self):
        """Test long invalid frames are truncated in the message."""
        with pytest.raises(FrameParseError) as exc:
            parse_frame("{" + "x" * 500)
        assert str(exc.value).endswith("...")
