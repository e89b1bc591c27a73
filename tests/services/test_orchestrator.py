import asyncio

import pytest

from torstream.core.errors import (
    AlreadyExists,
    DownloadError,
    InvalidInput,
    NotReady,
    QueueLimit,
    RemoteError,
)
from torstream.core.models import ResolutionJob
from torstream.services.orchestrator import (
    ResolutionOrchestrator,
    find_job,
    is_job_failed,
    is_job_ready,
    is_job_waiting,
)
from tests.conftest import HASH_A, make_job

MAGNET = f"magnet:?xt=urn:btih:{HASH_A}&dn=Show"
EPISODES = [(1, "Show.S01E01.mkv", 100), (2, "Show.S01E02.mkv", 100)]


def make_orchestrator(client, clock, **kwargs):
    kwargs.setdefault("poll_interval", 2.0)
    kwargs.setdefault("create_failed_poll_interval", 3.0)
    kwargs.setdefault("min_wait", 5.0)
    return ResolutionOrchestrator(client, sleep=clock.sleep, clock=clock, **kwargs)


@pytest.mark.asyncio
async def test_resolves_requested_episode(job_client, clock):
    job_client.list_jobs.return_value = [make_job(files=EPISODES)]
    orchestrator = make_orchestrator(job_client, clock)

    result = await orchestrator.resolve("key", MAGNET, info_hash=HASH_A, season=1, episode=2)

    assert result.url == "https://cdn.example/video.mkv"
    assert result.subtitles == []
    job_client.request_download_link.assert_awaited_once_with("key", "1", "2")
    job_client.list_jobs.assert_awaited_with("key", bypass_cache=True, offset=0, limit=1000)
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_queue_limit_is_surfaced_without_polling(job_client, clock):
    job_client.create_job.side_effect = QueueLimit("monthly limit", status=403, code="MONTHLY_LIMIT")
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(QueueLimit):
        await orchestrator.resolve("key", MAGNET, info_hash=HASH_A)

    assert job_client.create_job.await_count == 1
    assert job_client.list_jobs.await_count == 0
    assert clock.sleeps == []


@pytest.mark.asyncio
async def test_already_exists_is_absorbed(job_client, clock):
    job_client.create_job.side_effect = AlreadyExists("exists")
    job_client.list_jobs.return_value = [make_job(job_id="9", files=[(4, "Movie.mkv", 10)])]
    orchestrator = make_orchestrator(job_client, clock)

    result = await orchestrator.resolve("key", MAGNET, file_name="Movie.mkv")

    assert result.url == "https://cdn.example/video.mkv"
    assert job_client.create_job.await_count == 1
    job_client.request_download_link.assert_awaited_once_with("key", "9", "4")


@pytest.mark.asyncio
async def test_generic_create_error_retries_once_without_name(job_client, clock):
    job_client.create_job.side_effect = RemoteError("boom")
    job_client.list_jobs.side_effect = [[], [make_job(files=[(1, "Movie.mkv", 10)])]]
    orchestrator = make_orchestrator(job_client, clock)

    await orchestrator.resolve("key", MAGNET, file_name="Movie.mkv")

    assert job_client.create_job.await_count == 2
    assert job_client.create_job.await_args_list[0].kwargs == {"display_name": "Movie.mkv"}
    assert job_client.create_job.await_args_list[1].args == ("key", MAGNET)
    assert job_client.create_job.await_args_list[1].kwargs == {}
    # both attempts failed: slower backoff while polling
    assert clock.sleeps == [3.0]


@pytest.mark.asyncio
async def test_queue_limit_on_retry_is_surfaced(job_client, clock):
    job_client.create_job.side_effect = [RemoteError("boom"), QueueLimit("cooldown")]
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(QueueLimit):
        await orchestrator.resolve("key", MAGNET)
    assert job_client.list_jobs.await_count == 0


@pytest.mark.asyncio
async def test_skip_create(job_client, clock):
    job_client.list_jobs.return_value = [make_job(files=[(1, "Movie.mkv", 10)])]
    orchestrator = make_orchestrator(job_client, clock)

    await orchestrator.resolve("key", MAGNET, skip_create=True)

    job_client.create_job.assert_not_awaited()


@pytest.mark.asyncio
async def test_polls_until_job_and_files_appear(job_client, clock):
    job_client.list_jobs.side_effect = [
        [],
        [make_job(state="metadl")],
        [make_job(state="downloading", progress_percent=40.0, files=EPISODES)],
        [make_job(state="completed", download_finished=True, files=EPISODES)],
    ]
    orchestrator = make_orchestrator(job_client, clock)

    result = await orchestrator.resolve("key", MAGNET, season=1, episode=1)

    assert result.url == "https://cdn.example/video.mkv"
    assert clock.sleeps == [2.0, 2.0, 2.0]
    job_client.request_download_link.assert_awaited_once_with("key", "1", "1")


@pytest.mark.asyncio
async def test_matches_job_by_created_id(job_client, clock):
    job_client.create_job.return_value = ResolutionJob(id="77")
    job_client.list_jobs.return_value = [
        make_job(job_id="5", info_hash="b" * 40, files=[(1, "Other.mkv", 10)]),
        make_job(job_id="77", info_hash="", files=[(3, "Movie.mkv", 10)]),
    ]
    orchestrator = make_orchestrator(job_client, clock)

    await orchestrator.resolve("key", MAGNET)

    job_client.request_download_link.assert_awaited_once_with("key", "77", "3")


@pytest.mark.asyncio
async def test_remote_failure_state_is_download_error(job_client, clock):
    job_client.list_jobs.return_value = [make_job(state="error", files=EPISODES)]
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(DownloadError):
        await orchestrator.resolve("key", MAGNET)
    job_client.request_download_link.assert_not_awaited()


@pytest.mark.asyncio
async def test_inactive_unfinished_job_is_download_error(job_client, clock):
    job_client.list_jobs.return_value = [make_job(state="stalled (no seeds)", active=False, files=EPISODES)]
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(DownloadError):
        await orchestrator.resolve("key", MAGNET)


@pytest.mark.asyncio
async def test_deadline_raises_not_ready(job_client, clock):
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(NotReady) as exc:
        await orchestrator.resolve("key", MAGNET, max_wait=10)

    assert exc.value.kind == "NOT_READY"
    assert clock.sleeps == [2.0] * 5
    assert job_client.list_jobs.await_count == 5


@pytest.mark.asyncio
async def test_max_wait_has_a_floor(job_client, clock):
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(NotReady):
        await orchestrator.resolve("key", MAGNET, max_wait=0.5)
    assert clock.now >= 5.0


@pytest.mark.asyncio
async def test_episode_without_match_keeps_polling_until_deadline(job_client, clock):
    job_client.list_jobs.return_value = [make_job(files=[(1, "Movie.mkv", 5000)])]
    orchestrator = make_orchestrator(job_client, clock)

    with pytest.raises(NotReady):
        await orchestrator.resolve("key", MAGNET, season=2, episode=3, max_wait=6)
    job_client.request_download_link.assert_not_awaited()


@pytest.mark.asyncio
async def test_transient_listing_and_link_errors_are_retried(job_client, clock):
    job_client.list_jobs.side_effect = [RemoteError("502"), [make_job(files=EPISODES)], [make_job(files=EPISODES)]]
    job_client.request_download_link.side_effect = [RemoteError("not yet"), "https://cdn.example/ok"]
    orchestrator = make_orchestrator(job_client, clock)

    result = await orchestrator.resolve("key", MAGNET, season=1, episode=2)

    assert result.url == "https://cdn.example/ok"
    assert clock.sleeps == [2.0, 2.0]


@pytest.mark.asyncio
async def test_subtitles_are_best_effort(job_client, clock):
    files = [
        (1, "Movie.mkv", 1000),
        (2, "Movie.hun.srt", 1),
        (3, "Movie.eng.srt", 1),
    ]
    job_client.list_jobs.return_value = [make_job(files=files)]

    async def link(api_key, job_id, file_id):
        return f"https://cdn.example/{file_id}"

    job_client.request_download_link.side_effect = link
    orchestrator = make_orchestrator(job_client, clock, subtitle_limit=2)

    result = await orchestrator.resolve("key", MAGNET, include_subtitles=True)

    assert result.url == "https://cdn.example/1"
    assert [(s.id, s.lang, s.url) for s in result.subtitles] == [
        ("tb-sub-2", "hu", "https://cdn.example/2"),
        ("tb-sub-3", "en", "https://cdn.example/3"),
    ]


@pytest.mark.asyncio
async def test_slow_or_failing_subtitles_do_not_fail_resolution(job_client, clock):
    files = [(1, "Movie.mkv", 1000), (2, "Movie.hun.srt", 1), (3, "Movie.eng.srt", 1)]
    job_client.list_jobs.return_value = [make_job(files=files)]
    hang = asyncio.Event()

    async def link(api_key, job_id, file_id):
        if file_id == "2":
            await hang.wait()
        if file_id == "3":
            raise RemoteError("gone")
        return "https://cdn.example/video"

    job_client.request_download_link.side_effect = link
    orchestrator = make_orchestrator(job_client, clock, subtitle_limit=2, subtitle_timeout=0.01)

    result = await orchestrator.resolve("key", MAGNET, include_subtitles=True)

    assert result.url == "https://cdn.example/video"
    assert result.subtitles == []


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "api_key,magnet,info_hash",
    [("", MAGNET, HASH_A), ("key", "", HASH_A), ("key", "magnet:?dn=nohash", None)],
)
async def test_invalid_input(job_client, clock, api_key, magnet, info_hash):
    orchestrator = make_orchestrator(job_client, clock)
    with pytest.raises(InvalidInput):
        await orchestrator.resolve(api_key, magnet, info_hash=info_hash)
    job_client.create_job.assert_not_awaited()


@pytest.mark.asyncio
async def test_non_positive_episode_is_invalid_input(job_client, clock):
    orchestrator = make_orchestrator(job_client, clock)
    with pytest.raises(InvalidInput):
        await orchestrator.resolve("key", MAGNET, season=0, episode=1)


def test_job_state_helpers():
    assert is_job_ready(make_job(state="cached"))
    assert is_job_ready(make_job(progress_percent=100.0))
    assert is_job_waiting(make_job(state="downloading", progress_percent=10.0))
    assert not is_job_waiting(make_job())
    assert is_job_failed(make_job(state="error"))
    assert is_job_failed(make_job(active=False))
    assert not is_job_failed(make_job(active=False, download_finished=True))
    assert not is_job_failed(make_job(active=False, state="queued"))


def test_find_job_prefers_id_then_hash():
    jobs = [make_job(job_id="1", info_hash="b" * 40), make_job(job_id="2", info_hash=HASH_A)]
    assert find_job(jobs, "1", HASH_A).id == "1"
    assert find_job(jobs, "", HASH_A).id == "2"
    assert find_job(jobs, "", "c" * 40) is None
