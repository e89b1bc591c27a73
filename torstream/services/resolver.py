import asyncio
import hashlib
import secrets
from typing import Dict, List, Optional, Sequence

from loguru import logger

from torstream.core.cache import CacheStore, RequestDeduplicator, TTLCache
from torstream.core.config import settings
from torstream.core.errors import InvalidInput, SelectionNotFound
from torstream.core.models import ResolutionJob, ResolveResult, SearchResult, StreamOption, StreamSelection
from torstream.services.base import JobQueueClient
from torstream.services.orchestrator import ResolutionOrchestrator, is_job_ready
from torstream.utils.parser import VideoParser
from torstream.utils.torrent import build_magnet, extract, extract_info_hash, normalize_info_hash, normalize_magnet


def account_key(api_key: str) -> str:
    """Stable, non-reversible account id for cache keys and logs."""
    return hashlib.sha1(str(api_key or "").encode("utf-8")).hexdigest()[:16]


class ResolverService:
    """
    Entry point for resolving search rows into playable URLs.

    Owns the short-lived state around the orchestrator: stream selections
    handed out to players, resolved URLs, the account job-listing cache and
    the in-flight map that keeps one orchestration per key.
    """
    def __init__(
        self,
        client: JobQueueClient,
        orchestrator: Optional[ResolutionOrchestrator] = None,
        resolved_cache: Optional[CacheStore] = None,
        job_list_cache: Optional[CacheStore] = None,
        selections: Optional[CacheStore] = None,
        deduplicator: Optional[RequestDeduplicator] = None,
        resolve_ttl: float = settings.RESOLVE_CACHE_TTL,
        job_list_ttl: float = settings.JOB_LIST_CACHE_TTL,
        selection_ttl: float = settings.SELECTION_TTL,
        availability_timeout: float = settings.AVAILABILITY_TIMEOUT,
        max_wait: float = settings.MAX_WAIT,
        cached_max_wait: float = settings.CACHED_MAX_WAIT,
    ):
        self.client = client
        self.orchestrator = orchestrator or ResolutionOrchestrator(client)
        self.resolved_cache = resolved_cache if resolved_cache is not None else TTLCache(resolve_ttl)
        self.job_list_cache = job_list_cache if job_list_cache is not None else TTLCache(job_list_ttl)
        self.selections = selections if selections is not None else TTLCache(selection_ttl)
        self.deduplicator = deduplicator or RequestDeduplicator()
        self.availability_timeout = availability_timeout
        self.max_wait = max_wait
        self.cached_max_wait = cached_max_wait

    # --- Selections ---

    def register_selection(
        self,
        api_key: str,
        row: SearchResult,
        season: Optional[int] = None,
        episode: Optional[int] = None,
        cached: Optional[bool] = None,
    ) -> str:
        if not api_key:
            raise InvalidInput("missing TorBox API key")
        magnet = normalize_magnet(row.magnet)
        info_hash = normalize_info_hash(row.info_hash) or extract_info_hash(magnet)
        if not magnet or not info_hash:
            raise InvalidInput(f"search result has no usable magnet/infohash: {row.title}")

        selection_key = secrets.token_urlsafe(9)
        self.selections.set(
            selection_key,
            StreamSelection(
                account=account_key(api_key),
                magnet=magnet,
                info_hash=info_hash,
                file_name=row.file_name,
                season=season,
                episode=episode,
                cached=cached,
            ),
        )
        return selection_key

    async def list_jobs_cached(self, api_key: str) -> List[ResolutionJob]:
        """Account job listing, shared by near-simultaneous callers for a few seconds."""
        account = account_key(api_key)
        jobs = self.job_list_cache.get(account)
        if jobs is not None:
            return jobs

        async def fetch() -> List[ResolutionJob]:
            listed = await self.client.list_jobs(api_key, bypass_cache=True, offset=0, limit=400)
            self.job_list_cache.set(account, listed)
            return listed

        return await self.deduplicator.run(("mylist", account), fetch)

    async def describe_results(
        self,
        api_key: str,
        rows: Sequence[SearchResult],
        season: Optional[int] = None,
        episode: Optional[int] = None,
        limit: int = 30,
    ) -> List[StreamOption]:
        """
        Turns indexer rows into stream options, each with a fresh selection key
        and a cache label taken from the account's own jobs, then from the
        service-wide instant cache.
        """
        if not api_key:
            raise InvalidInput("missing TorBox API key")

        usable = []
        for row in rows[:limit]:
            magnet = normalize_magnet(row.magnet)
            info_hash = normalize_info_hash(row.info_hash) or extract_info_hash(magnet)
            if magnet and info_hash:
                usable.append((row, info_hash))

        own_jobs: Dict[str, ResolutionJob] = {}
        try:
            jobs = await asyncio.wait_for(self.list_jobs_cached(api_key), timeout=self.availability_timeout)
            own_jobs = {job.info_hash: job for job in jobs if job.info_hash}
        except Exception as e:
            logger.warning(f"Job listing unavailable for stream labels: {e!r}")

        cached_map: Dict[str, bool] = {}
        try:
            cached_map = await asyncio.wait_for(
                self.client.check_cached(api_key, [h for _, h in usable]),
                timeout=self.availability_timeout,
            )
        except Exception as e:
            logger.warning(f"Instant availability check unavailable: {e!r}")

        options = []
        for row, info_hash in usable:
            own = own_jobs.get(info_hash)
            cached = cached_map.get(info_hash)
            if own is not None:
                cached = is_job_ready(own)

            if own is not None and not cached:
                tag = (own.state or "processing").upper()
                if own.progress_percent is not None:
                    tag = f"{tag} {round(own.progress_percent)}%"
                cache_tag = f"[{tag}]"
            elif cached is True:
                cache_tag = "[CACHED]"
            elif cached is False:
                cache_tag = "[UNCACHED]"
            else:
                cache_tag = "[UNKNOWN]"

            options.append(
                StreamOption(
                    selection_key=self.register_selection(api_key, row, season, episode, cached),
                    title=row.title,
                    info_hash=info_hash,
                    quality=VideoParser.get_quality(row.title),
                    size=VideoParser.format_size(row.size_bytes),
                    category=" ".join(p.upper() for p in (row.category or "").split("_") if p),
                    seeders=row.seeders,
                    cached=cached,
                    cache_tag=cache_tag,
                )
            )
        return options

    # --- Resolution ---

    async def resolve(self, api_key: str, selection_key: str, include_subtitles: bool = False) -> ResolveResult:
        if not api_key:
            raise InvalidInput("missing TorBox API key")
        account = account_key(api_key)
        key = f"{account}|{selection_key}|{int(include_subtitles)}"

        hit = self.resolved_cache.get(key)
        if hit is not None:
            logger.info(f"Resolve cache hit for selection {selection_key}")
            return hit

        selection: Optional[StreamSelection] = self.selections.get(selection_key)
        if selection is None or selection.account != account:
            raise SelectionNotFound("selected torrent not found or expired")

        is_episode = bool(selection.season and selection.episode)
        return await self._resolve_keyed(
            key,
            api_key,
            magnet=selection.magnet,
            info_hash=selection.info_hash,
            file_name=None if is_episode else selection.file_name,
            season=selection.season,
            episode=selection.episode,
            include_subtitles=include_subtitles,
            cached_hint=selection.cached,
        )

    async def resolve_magnet(
        self,
        api_key: str,
        magnet: str,
        info_hash: Optional[str] = None,
        file_name: Optional[str] = None,
        season: Optional[int] = None,
        episode: Optional[int] = None,
        include_subtitles: bool = False,
    ) -> ResolveResult:
        if not api_key:
            raise InvalidInput("missing TorBox API key")
        target = normalize_info_hash(info_hash) or extract_info_hash(magnet)
        if not target:
            raise InvalidInput("missing infoHash")
        key = f"{account_key(api_key)}|{target}|{season}|{episode}|{file_name or ''}|{int(include_subtitles)}"

        hit = self.resolved_cache.get(key)
        if hit is not None:
            return hit

        return await self._resolve_keyed(
            key, api_key, magnet, target, file_name, season, episode, include_subtitles, cached_hint=None
        )

    async def resolve_torrent(
        self,
        api_key: str,
        torrent: bytes,
        season: Optional[int] = None,
        episode: Optional[int] = None,
        include_subtitles: bool = False,
    ) -> ResolveResult:
        """Resolves raw .torrent bytes by way of a magnet built from their metadata."""
        metadata = extract(torrent)
        preferred = None
        if len(metadata.files) == 1:
            preferred = metadata.files[0].name.rsplit("/", 1)[-1]
        return await self.resolve_magnet(
            api_key,
            build_magnet(metadata),
            info_hash=metadata.info_hash,
            file_name=preferred,
            season=season,
            episode=episode,
            include_subtitles=include_subtitles,
        )

    async def _probe_cached(self, api_key: str, info_hash: str, fallback: Optional[bool]) -> Optional[bool]:
        try:
            cached_map = await asyncio.wait_for(
                self.client.check_cached(api_key, [info_hash]), timeout=self.availability_timeout
            )
        except Exception as e:
            logger.debug(f"Availability probe skipped: {e!r}")
            return fallback
        if info_hash in cached_map:
            return bool(cached_map[info_hash])
        return fallback

    async def _resolve_keyed(
        self,
        key: str,
        api_key: str,
        magnet: str,
        info_hash: str,
        file_name: Optional[str],
        season: Optional[int],
        episode: Optional[int],
        include_subtitles: bool,
        cached_hint: Optional[bool],
    ) -> ResolveResult:
        async def run() -> ResolveResult:
            cached = await self._probe_cached(api_key, info_hash, cached_hint)
            max_wait = self.cached_max_wait if cached is True else self.max_wait
            logger.info(f"Calling TorBox resolver for {info_hash} (cached: {cached}, max wait: {max_wait:.0f}s)")
            result = await self.orchestrator.resolve(
                api_key,
                magnet,
                info_hash=info_hash,
                file_name=file_name,
                season=season,
                episode=episode,
                include_subtitles=include_subtitles,
                max_wait=max_wait,
            )
            self.resolved_cache.set(key, result)
            return result

        return await self.deduplicator.run(key, run)
