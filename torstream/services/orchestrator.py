import asyncio
import time
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from loguru import logger
from pydantic import ValidationError

from torstream.core.config import settings
from torstream.core.errors import (
    AlreadyExists,
    DownloadError,
    InvalidInput,
    NotReady,
    QueueLimit,
    RemoteError,
)
from torstream.core.models import ResolutionJob, ResolveResult, SelectionCriteria, SubtitleLink
from torstream.services.base import JobQueueClient
from torstream.utils.parser import FileSelector
from torstream.utils.torrent import extract_info_hash, normalize_info_hash, normalize_magnet

_READY_STATES = ("completed", "complete", "finished", "ready", "cached", "uploading", "seeding")
_FAILED_STATES = ("error", "failed", "dead", "virus")
_WAITING_STATES = ("queued", "metadl", "checking", "downloading", "paused", "stalled", "allocating")


def is_job_ready(job: ResolutionJob) -> bool:
    if job.download_finished or job.download_present:
        return True
    if any(s in job.state for s in _READY_STATES):
        return True
    return job.progress_percent is not None and job.progress_percent >= 100


def is_job_waiting(job: ResolutionJob) -> bool:
    """Still queued or downloading on the remote side."""
    if is_job_ready(job):
        return False
    if any(s in job.state for s in _WAITING_STATES):
        return True
    return job.progress_percent is not None and job.progress_percent < 100


def is_job_failed(job: ResolutionJob) -> bool:
    if any(s in job.state for s in _FAILED_STATES):
        return True
    if job.active is False and not is_job_ready(job):
        return not any(s in job.state for s in ("queued", "metadl", "checking"))
    return False


def find_job(jobs: Sequence[ResolutionJob], job_id: str, info_hash: str) -> Optional[ResolutionJob]:
    if job_id:
        for job in jobs:
            if job.id == job_id:
                return job
    for job in jobs:
        if job.info_hash and job.info_hash == info_hash:
            return job
    return None


class ResolutionState(str, Enum):
    START = "start"
    ENQUEUE_ATTEMPTED = "enqueue_attempted"
    POLLING = "polling"
    FOUND_READY = "found_ready"
    FOUND_ERROR = "found_error"
    TIMED_OUT = "timed_out"


class ResolutionOrchestrator:
    """
    Drives the remote create/poll/link protocol to a downloadable URL.

    START -> ENQUEUE_ATTEMPTED -> POLLING -> FOUND_READY | FOUND_ERROR | TIMED_OUT

    Every polling iteration sleeps; duplicate creates are absorbed; queue
    limits are surfaced at once and never retried here.
    """
    def __init__(
        self,
        client: JobQueueClient,
        poll_interval: float = settings.POLL_INTERVAL,
        create_failed_poll_interval: float = settings.CREATE_FAILED_POLL_INTERVAL,
        min_wait: float = settings.MIN_WAIT,
        subtitle_timeout: float = settings.SUBTITLE_TIMEOUT,
        subtitle_limit: int = settings.SUBTITLE_LIMIT,
        job_list_limit: int = settings.JOB_LIST_LIMIT,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.client = client
        self.poll_interval = poll_interval
        self.create_failed_poll_interval = create_failed_poll_interval
        self.min_wait = min_wait
        self.subtitle_timeout = subtitle_timeout
        self.subtitle_limit = subtitle_limit
        self.job_list_limit = job_list_limit
        self._sleep = sleep
        self._clock = clock

    async def resolve(
        self,
        api_key: str,
        magnet: str,
        info_hash: Optional[str] = None,
        file_name: Optional[str] = None,
        season: Optional[int] = None,
        episode: Optional[int] = None,
        include_subtitles: bool = False,
        max_wait: float = settings.MAX_WAIT,
        skip_create: bool = False,
    ) -> ResolveResult:
        magnet = normalize_magnet(magnet)
        target_hash = normalize_info_hash(info_hash) or extract_info_hash(magnet)
        if not api_key:
            raise InvalidInput("missing TorBox API key")
        if not magnet:
            raise InvalidInput("missing magnet")
        if not target_hash:
            raise InvalidInput("missing infoHash")
        try:
            criteria = SelectionCriteria(preferred_file_name=file_name, season=season, episode=episode)
        except ValidationError as e:
            raise InvalidInput(f"invalid selection criteria: {e.errors()[0].get('msg')}") from None

        state = ResolutionState.START
        logger.info(f"Resolving {target_hash} (S{season}E{episode}, file: {file_name or '-'})")

        job_id = ""
        create_failed = False
        if not skip_create:
            job_id, create_failed = await self._enqueue(api_key, magnet, file_name)
        state = self._transition(state, ResolutionState.ENQUEUE_ATTEMPTED, target_hash)

        deadline = self._clock() + max(self.min_wait, float(max_wait or settings.MAX_WAIT))
        backoff = self.create_failed_poll_interval if create_failed else self.poll_interval
        state = self._transition(state, ResolutionState.POLLING, target_hash)

        attempt = 0
        while self._clock() < deadline:
            attempt += 1
            try:
                jobs = await self.client.list_jobs(api_key, bypass_cache=True, offset=0, limit=self.job_list_limit)
            except RemoteError as e:
                logger.warning(f"Job listing failed (attempt {attempt}): {e}")
                await self._sleep(backoff)
                continue

            job = find_job(jobs, job_id, target_hash)
            if job is None:
                if attempt == 1 or attempt % 5 == 0:
                    logger.info(f"Job for {target_hash} not listed yet (attempt {attempt})")
                await self._sleep(backoff)
                continue

            job_id = job_id or job.id

            if is_job_failed(job):
                self._transition(state, ResolutionState.FOUND_ERROR, target_hash)
                raise DownloadError(f"TorBox download failed (state: {job.state or 'inactive'})")

            if not job.files:
                logger.debug(f"Job {job_id} has no files yet (state: {job.state})")
                await self._sleep(backoff)
                continue

            if is_job_waiting(job):
                if attempt == 1 or attempt % 5 == 0:
                    logger.info(f"Job {job_id} {job.state or 'in progress'} {job.progress_percent or 0:.0f}%")
                await self._sleep(backoff)
                continue

            file_id = FileSelector.select_video_file(job.files, criteria)
            if file_id is None or not job_id:
                # Metadata may still be settling
                logger.debug(f"No file selected yet for job {job_id or '?'} (attempt {attempt})")
                await self._sleep(backoff)
                continue

            try:
                url = await self.client.request_download_link(api_key, job_id, file_id)
            except RemoteError as e:
                logger.warning(f"Download link request failed for {job_id}/{file_id}: {e}")
                await self._sleep(backoff)
                continue

            self._transition(state, ResolutionState.FOUND_READY, target_hash)
            subtitles: List[SubtitleLink] = []
            if include_subtitles:
                video_name = next((f.name for f in job.files if f.id == file_id), file_name)
                subtitles = await self._resolve_subtitles(api_key, job_id, job, video_name)
            return ResolveResult(url=url, subtitles=subtitles)

        self._transition(state, ResolutionState.TIMED_OUT, target_hash)
        raise NotReady(f"TorBox not ready or file not found after {attempt} attempts")

    async def _enqueue(self, api_key: str, magnet: str, file_name: Optional[str]):
        """Returns (job_id, create_failed)."""
        try:
            job = await self.client.create_job(api_key, magnet, display_name=file_name)
            return job.id, False
        except AlreadyExists:
            logger.info("Torrent already exists on TorBox, locating it via job list")
            return "", False
        except QueueLimit as e:
            logger.error(f"TorBox queue limit reached: {e}")
            raise
        except Exception as e:
            logger.warning(f"TorBox create failed, retrying without display name: {e}")

        try:
            job = await self.client.create_job(api_key, magnet)
            return job.id, False
        except AlreadyExists:
            return "", False
        except QueueLimit as e:
            logger.error(f"TorBox queue limit reached: {e}")
            raise
        except Exception as e:
            logger.error(f"TorBox create retry failed, polling anyway: {e}")
            return "", True

    async def _resolve_subtitles(
        self, api_key: str, job_id: str, job: ResolutionJob, video_name: Optional[str]
    ) -> List[SubtitleLink]:
        subtitles = []
        for candidate in FileSelector.select_subtitles(job.files, video_name, self.subtitle_limit):
            try:
                url = await asyncio.wait_for(
                    self.client.request_download_link(api_key, job_id, candidate.id),
                    timeout=self.subtitle_timeout,
                )
            except Exception as e:
                logger.debug(f"Skipping subtitle {candidate.name}: {e!r}")
                continue
            subtitles.append(SubtitleLink(id=f"tb-sub-{candidate.id}", lang=candidate.lang, url=url))
        return subtitles

    @staticmethod
    def _transition(current: ResolutionState, new: ResolutionState, info_hash: str) -> ResolutionState:
        logger.debug(f"{info_hash}: {current.value} -> {new.value}")
        return new
