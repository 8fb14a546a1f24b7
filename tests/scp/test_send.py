from __future__ import annotations

import io
from pathlib import Path

import pytest

from librarian.channel import ChannelStream
from librarian.exceptions import ConfigurationError, ProtocolError, SCPError
from librarian.modules import Done, Emit, Failed
from librarian.scp import ScpSend, SendState, transfer
from librarian.scp.header import ControlLine
from librarian.scp.source import Payload, payload_from
from tests.conftest import FakeProvider

pytestmark = [pytest.mark.unit]


def build(make_conn, events, content=b"foo\nbar\n", *, name="notes.txt", size=None):
    payload = content if isinstance(content, Payload) else payload_from(content)
    module = ScpSend(ControlLine(0o644, size if size is not None else payload.size, name), payload)
    provider = FakeProvider(events)
    stream = ChannelStream.build(make_conn(provider), "scp -t /tmp/notes.txt", module=module, data_timeout=1.0)
    return stream, provider


ACK = ("data", 0, b"\x00")
CLEAN_EXIT = [("eof",), ("exit_status", 0), ("closed",)]


class TestHandshake:
    def test_header_written_on_initialize(self, make_conn):
        stream, provider = build(make_conn, [])
        assert provider.channel.sent == [b"C0644 8 notes.txt\n"]
        assert stream.module.state is SendState.AWAIT_ACK0
        stream.close()

    def test_full_exchange(self, make_conn):
        stream, provider = build(make_conn, [ACK, ACK, *CLEAN_EXIT])

        assert stream.pull() == Emit()
        assert provider.channel.sent[1:] == [b"foo\nbar\n", b"\x00"]
        assert stream.module.state is SendState.AWAIT_ACK1

        assert stream.pull() == Emit()
        assert provider.channel.eof_sent
        assert stream.module.state is SendState.SEND_EOF

        steps = [stream.pull() for _ in range(3)]
        assert steps[-1] == Done()
        assert stream.module.state is SendState.DONE
        assert stream.result() is None
        assert provider.channel.close_count == 1

    def test_both_acks_in_one_chunk(self, make_conn):
        stream, provider = build(make_conn, [("data", 0, b"\x00\x00"), *CLEAN_EXIT])
        assert transfer(stream).ok
        assert provider.channel.eof_sent

    def test_zero_byte_payload(self, make_conn):
        stream, provider = build(make_conn, [ACK, ACK, *CLEAN_EXIT], content=b"", name="empty")
        assert transfer(stream).ok
        assert provider.channel.sent == [b"C0644 0 empty\n", b"\x00"]

    def test_file_streamed_in_chunks(self, make_conn, tmp_path: Path):
        source = tmp_path / "big.bin"
        source.write_bytes(bytes(range(256)) * 10)
        payload = payload_from(source, chunk_size=1000)
        stream, provider = build(make_conn, [ACK, ACK, *CLEAN_EXIT], content=payload)
        assert transfer(stream).ok
        body = provider.channel.sent[1:-1]
        assert [len(c) for c in body] == [1000, 1000, 560]
        assert b"".join(body) == source.read_bytes()


class TestFailures:
    def test_refusal_carries_diagnostic(self, make_conn):
        events = [("data", 0, b"\x01scp: /tmp/notes.txt: Permission denied\n"), ("exit_status", 1), ("closed",)]
        stream, _ = build(make_conn, events)
        result = transfer(stream)
        assert not result.ok
        assert result.reason == "scp: /tmp/notes.txt: Permission denied"
        assert result.error is SCPError

    def test_refusal_split_across_chunks(self, make_conn):
        events = [("data", 0, b"\x02scp: disk "), ("data", 0, b"full\n"), ("closed",)]
        stream, _ = build(make_conn, events)
        assert transfer(stream).reason == "scp: disk full"

    def test_refusal_cut_off_before_newline(self, make_conn):
        events = [("data", 0, b"\x01scp: /tmp/notes.txt: Read-only file system"), ("closed",)]
        stream, _ = build(make_conn, events)
        result = transfer(stream)
        assert result.reason == "scp: /tmp/notes.txt: Read-only file system"
        assert result.error is SCPError

    def test_refusal_cut_off_by_exit_status(self, make_conn):
        events = [("data", 0, b"\x01scp: quota exceeded"), ("exit_status", 1), ("closed",)]
        stream, _ = build(make_conn, events)
        assert transfer(stream).reason == "scp: quota exceeded"

    def test_nonzero_exit_uses_stderr(self, make_conn):
        events = [ACK, ACK, ("data", 1, b"scp: write failed"), ("eof",), ("exit_status", 1), ("closed",)]
        stream, _ = build(make_conn, events)
        result = transfer(stream)
        assert result.reason == "scp: write failed"
        assert stream.module.state is SendState.ERROR

    def test_nonzero_exit_without_stderr(self, make_conn):
        stream, _ = build(make_conn, [ACK, ACK, ("eof",), ("exit_status", 1), ("closed",)])
        assert transfer(stream).reason == "scp exited with status 1"

    def test_timeout_is_fatal(self, make_conn):
        stream, provider = build(make_conn, [])
        step = stream.pull()
        assert step == Failed("timed out in AWAIT_ACK0")
        assert provider.channel.close_count == 1

    def test_provider_error(self, make_conn):
        stream, _ = build(make_conn, [ACK, ("error", "connection lost")])
        result = transfer(stream)
        assert result.reason == "connection lost"

    def test_closed_early(self, make_conn):
        stream, _ = build(make_conn, [ACK, ("closed",)])
        assert transfer(stream).reason == "channel closed while in AWAIT_ACK1"

    def test_unexpected_extra_reply(self, make_conn):
        stream, _ = build(make_conn, [ACK, ACK, ("data", 0, b"\x00"), *CLEAN_EXIT])
        result = transfer(stream)
        assert result.error is ProtocolError

    def test_payload_longer_than_declared(self, make_conn):
        payload = Payload(3, lambda: iter([b"ab", b"cd"]))
        stream, provider = build(make_conn, [ACK], content=payload)
        result = transfer(stream)
        assert result.error is ProtocolError
        assert "exceeds declared size of 3" in result.reason
        assert provider.channel.sent[1:] == [b"ab"]

    def test_payload_shorter_than_declared(self, make_conn):
        payload = Payload(10, lambda: iter([b"abc"]))
        stream, _ = build(make_conn, [ACK], content=payload)
        result = transfer(stream)
        assert result.error is ProtocolError
        assert "sent 3 of 10 bytes" in result.reason

    def test_bad_chunk_in_payload_fails_transfer(self, make_conn):
        payload = payload_from((c for c in [b"ab", 3.5]), size=3)
        stream, provider = build(make_conn, [ACK], content=payload)
        result = transfer(stream)
        assert result.error is SCPError
        assert result.reason == "error reading payload: cannot send float as SCP content"
        assert provider.channel.sent[1:] == [b"ab"]
        assert stream.module.state is SendState.ERROR

    def test_local_read_error_fails_transfer(self, make_conn):
        def chunks():
            yield b"a"
            raise OSError("Input/output error")

        stream, _ = build(make_conn, [ACK], content=Payload(2, chunks))
        assert transfer(stream).reason == "error reading payload: Input/output error"

    def test_header_payload_size_mismatch(self):
        with pytest.raises(ValueError, match="announces 5 bytes"):
            ScpSend(ControlLine(0o644, 5, "x"), payload_from(b"abc"))


class TestPayloadFrom:
    def test_bytes_and_str(self):
        assert payload_from(b"abc").size == 3
        assert b"".join(payload_from("héllo").chunks()) == "héllo".encode()

    def test_nested_chunks(self):
        payload = payload_from([b"a", [b"bc", "d"], bytearray(b"e")])
        assert payload.size == 5
        assert b"".join(payload.chunks()) == b"abcde"

    def test_file_object(self):
        payload = payload_from(io.BytesIO(b"0123456789"), chunk_size=4)
        assert payload.size == 10
        assert list(payload.chunks()) == [b"0123", b"4567", b"89"]

    def test_generator_needs_size(self):
        with pytest.raises(ConfigurationError, match="size is required"):
            payload_from(c for c in [b"a"])

    def test_generator_with_size(self):
        assert payload_from((c for c in [b"a", b"b"]), size=2).size == 2

    def test_size_mismatch(self):
        with pytest.raises(ConfigurationError, match="does not match"):
            payload_from(b"abc", size=4)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(SCPError, match="error getting file size"):
            payload_from(tmp_path / "missing")

    def test_unsupported(self):
        with pytest.raises(ConfigurationError, match="cannot send"):
            payload_from(42)
