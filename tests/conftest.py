"""Shared test fixtures for the task board tests."""

import asyncio
import copy
import sys
import threading
from pathlib import Path

import pytest

# Ensure the package is importable without installing it
sys.path.insert(0, str(Path(__file__).parent.parent))

from taskboard.errors import RemoteReadError, RemoteWriteError
from taskboard.retry import RetryPolicy
from taskboard.store import DocumentStore


class MemoryStore(DocumentStore):
    """
    In-memory DocumentStore with failure injection.

    fail_writes: number of upcoming board writes to fail (-1 = all of them)
    fail_reads / fail_appends: fail every read / activity append while set
    write_gate: when set, board writes wait for the event before landing
    """

    def __init__(self, board=None):
        self.board = copy.deepcopy(board)
        self.entries = []
        self.board_writes = 0
        self.appends = 0
        self.fail_writes = 0
        self.fail_reads = False
        self.fail_appends = False
        self.write_gate = None
        self.board_listeners = []
        self.activity_listeners = []

    async def read_board_snapshot(self):
        if self.fail_reads:
            raise RemoteReadError("store offline")
        return copy.deepcopy(self.board)

    async def write_board_snapshot(self, document):
        self.board_writes += 1
        if self.fail_writes:
            if self.fail_writes > 0:
                self.fail_writes -= 1
            raise RemoteWriteError("write rejected")
        if self.write_gate is not None:
            await self.write_gate.wait()
        self.board = copy.deepcopy(document)
        loop = asyncio.get_running_loop()
        for callback in list(self.board_listeners):
            loop.call_soon(callback, copy.deepcopy(document))

    def push_board(self, document):
        """Simulate another client's write arriving through the subscription."""
        self.board = copy.deepcopy(document)
        for callback in list(self.board_listeners):
            callback(copy.deepcopy(document))

    def deliver_board(self, document):
        """Deliver a snapshot the store has since overwritten (a late push)."""
        for callback in list(self.board_listeners):
            callback(copy.deepcopy(document))

    def subscribe_board_snapshot(self, on_change):
        self.board_listeners.append(on_change)
        return lambda: self.board_listeners.remove(on_change)

    async def append_activity(self, entry):
        self.appends += 1
        if self.fail_appends:
            raise RemoteWriteError("append rejected")
        self.entries.insert(0, copy.deepcopy(entry))

    async def list_recent_activity(self, limit=50):
        if self.fail_reads:
            raise RemoteReadError("store offline")
        return copy.deepcopy(self.entries[:limit])

    def push_activity(self, entries):
        for callback in list(self.activity_listeners):
            callback(copy.deepcopy(entries))

    def subscribe_activity(self, on_change, limit=50):
        self.activity_listeners.append(on_change)
        return lambda: self.activity_listeners.remove(on_change)

    async def clear_all_activity(self):
        count = len(self.entries)
        self.entries = []
        return count


class RecordingAlerter:
    """Alerter double that remembers what was sent."""

    def __init__(self):
        self.sent = []
        self.delivered = threading.Event()

    async def send(self, text):
        self.sent.append(text)
        self.delivered.set()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def fast_retry():
    return RetryPolicy(max_attempts=3, base_delay=0)


@pytest.fixture
def alerter():
    return RecordingAlerter()
