"""
Shared fixtures for pdrive tests.
"""

import threading
import time
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest

from pdrive.hashing import b64_digest, composite_digest
from pdrive.models import ObjectDescriptor, PartResult, RetryPolicy, UploadTarget
from pdrive.store import SessionStore
from pdrive.transport import TransportClient

ENDPOINT = "https://storage.example.com"
TOKEN = "test-token"


def file_bytes(size: int) -> bytes:
    """Deterministic, non-repeating-per-part content."""
    pattern = bytes(range(251))
    return (pattern * (size // len(pattern) + 1))[:size]


@pytest.fixture
def target() -> UploadTarget:
    return UploadTarget(endpoint=ENDPOINT, token=TOKEN, bucket="backups", object_key="data.bin")


@pytest.fixture
def sleeps() -> List[float]:
    return []


@pytest.fixture
def transport(sleeps):
    client = TransportClient(
        ENDPOINT,
        TOKEN,
        retry=RetryPolicy(max_retries=5, base_delay=0.5, max_delay=30.0),
        sleep=sleeps.append,
    )
    yield client
    client.close()


@pytest.fixture
def store(tmp_path) -> SessionStore:
    return SessionStore(tmp_path / "sessions")


@pytest.fixture
def make_file(tmp_path) -> Callable[[str, int], Path]:
    def _make(name: str, size: int) -> Path:
        path = tmp_path / name
        path.write_bytes(file_bytes(size))
        return path

    return _make


class FakeTransport:
    """
    In-memory stand-in for TransportClient.

    Records every call, assembles objects like a well-behaved server, and
    can be told to fail specific operations.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.calls: List[tuple] = []
        self.uploaded: Dict[int, int] = {}
        self.part_attempts: Dict[int, int] = {}
        self.completed_order: List[int] = []
        self.fail_next_part: Optional[Exception] = None
        self.part_failures: Dict[int, List[Exception]] = {}
        self.initiate_error: Optional[Exception] = None
        self.size_override: Optional[int] = None
        self.in_flight = 0
        self.max_in_flight = 0
        self._lock = threading.Lock()

    def _record(self, *call) -> None:
        with self._lock:
            self.calls.append(call)

    def count(self, name: str) -> int:
        return sum(1 for call in self.calls if call[0] == name)

    def initiate_multipart(self, target: UploadTarget) -> str:
        self._record("initiate_multipart", target.object_key)
        if self.initiate_error:
            raise self.initiate_error
        return "upload-1"

    def upload_part(self, target, upload_id, index, data, digest) -> PartResult:
        self._record("upload_part", index)
        with self._lock:
            self.part_attempts[index] = self.part_attempts.get(index, 0) + 1
            self.in_flight += 1
            self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                time.sleep(self.delay)
            with self._lock:
                pending = self.part_failures.get(index)
                error = pending.pop(0) if pending else None
                if error is None and self.fail_next_part is not None:
                    error, self.fail_next_part = self.fail_next_part, None
            if error is not None:
                raise error
            with self._lock:
                self.uploaded[index] = len(data)
            return PartResult(index=index, etag=f'"etag-{index}"', digest=digest)
        finally:
            with self._lock:
                self.in_flight -= 1

    def complete_multipart(self, target, upload_id, parts) -> ObjectDescriptor:
        ordered = sorted(parts, key=lambda part: part.index)
        self._record("complete_multipart", len(ordered))
        self.completed_order = [part.index for part in ordered]
        size = sum(self.uploaded[part.index] for part in ordered)
        return ObjectDescriptor(
            key=target.object_key,
            size=self.size_override if self.size_override is not None else size,
            checksum=composite_digest(part.digest for part in ordered),
            part_count=len(ordered),
        )

    def abort_multipart(self, target, upload_id) -> bool:
        self._record("abort_multipart", upload_id)
        return True

    def put_single(self, target, data, digest) -> ObjectDescriptor:
        self._record("put_single", len(data))
        return ObjectDescriptor(key=target.object_key, size=len(data), checksum=b64_digest(digest))


@pytest.fixture
def fake_transport() -> FakeTransport:
    return FakeTransport()

