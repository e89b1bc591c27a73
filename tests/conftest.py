from typing import Any, List
from unittest.mock import AsyncMock, Mock

import pytest

from torstream.core.models import FileCandidate, ResolutionJob
from torstream.services.base import JobQueueClient

HASH_A = "a" * 40


class FakeClock:
    """Monotonic clock whose time only moves when something sleeps."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def bencode(value: Any) -> bytes:
    if isinstance(value, int):
        return b"i%de" % value
    if isinstance(value, str):
        value = value.encode("utf-8")
    if isinstance(value, bytes):
        return b"%d:%s" % (len(value), value)
    if isinstance(value, list):
        return b"l" + b"".join(bencode(v) for v in value) + b"e"
    if isinstance(value, dict):
        items = sorted((k.encode() if isinstance(k, str) else k, v) for k, v in value.items())
        return b"d" + b"".join(bencode(k) + bencode(v) for k, v in items) + b"e"
    raise TypeError(type(value))


def make_job(job_id="1", info_hash=HASH_A, files=(), **kwargs) -> ResolutionJob:
    return ResolutionJob(
        id=job_id,
        info_hash=info_hash,
        files=[FileCandidate(id=str(i), name=n, size_bytes=s) for i, n, s in files],
        **kwargs,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def job_client() -> Mock:
    client = Mock(spec=JobQueueClient)
    client.create_job = AsyncMock(return_value=ResolutionJob(id="1"))
    client.list_jobs = AsyncMock(return_value=[])
    client.request_download_link = AsyncMock(return_value="https://cdn.example/video.mkv")
    client.check_cached = AsyncMock(return_value={})
    return client
