"""Shared fixtures: a scripted in-memory transport and a sleep recorder."""

import pytest

import sweep


class FakeTransport:
    """Transport double fed with a script of response chunks.

    Each read takes the next chunk (splitting it if more bytes were
    requested than asked for). An empty chunk, or an exhausted script,
    behaves like a read that timed out without data.
    """

    def __init__(self, chunks=()):
        self.chunks = list(chunks)
        self.events = []
        self.reads = 0
        self.pending = 0
        self.closed = False

    @property
    def writes(self):
        return [e[1] for e in self.events if e[0] == "write"]

    def read(self, size, timeout):
        self.reads += 1
        if not self.chunks:
            return b""
        chunk = self.chunks.pop(0)
        if len(chunk) > size:
            self.chunks.insert(0, chunk[size:])
            chunk = chunk[:size]
        return chunk

    def write(self, data):
        self.events.append(("write", data))

    def bytes_pending(self):
        return self.pending

    def discard_pending(self):
        self.events.append(("discard", None))
        self.pending = 0

    def close(self):
        self.closed = True


@pytest.fixture
def sleeps(monkeypatch):
    """Record protocol delays instead of sleeping."""
    calls = []
    monkeypatch.setattr(sweep.time, "sleep", calls.append)
    return calls


@pytest.fixture
def make_sweep(sleeps):
    """Build a session around a FakeTransport scripted with `chunks`."""

    def factory(*chunks, log_io=False):
        transport = FakeTransport(chunks)
        return sweep.Sweep("/dev/fake", transport=transport,
                           log_io=log_io), transport

    return factory
