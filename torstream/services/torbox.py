import re
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from async_lru import alru_cache
from loguru import logger

from torstream.core.config import settings
from torstream.core.errors import AlreadyExists, QueueLimit, RemoteError, classify_remote_error
from torstream.core.models import FileCandidate, ResolutionJob
from torstream.services.base import JobQueueClient
from torstream.utils.torrent import extract_info_hash, normalize_info_hash

_HTTP_URL = re.compile(r"^https?://", re.IGNORECASE)


def _first_list(payload: Any) -> List[Any]:
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in ("data", "torrents", "list", "results"):
        if isinstance(payload.get(key), list):
            return payload[key]
    data = payload.get("data")
    if isinstance(data, dict):
        for key in ("torrents", "list", "results", "items"):
            if isinstance(data.get(key), list):
                return data[key]
    return []


def _first_str(item: Dict[str, Any], *keys: str) -> str:
    for key in keys:
        value = item.get(key)
        if value is not None and str(value).strip():
            return str(value).strip()
    return ""


def _as_bool(value: Any) -> Optional[bool]:
    if value is None:
        return None
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes")
    return bool(value)


def _read_progress(item: Dict[str, Any]) -> Optional[float]:
    for key in ("progress", "download_progress", "downloadProgress", "percent"):
        raw = item.get(key)
        if raw is None:
            continue
        try:
            value = float(raw)
        except (TypeError, ValueError):
            return None
        # TorBox reports a 0..1 fraction
        if isinstance(raw, float) and value <= 1.0:
            value *= 100
        return max(0.0, min(100.0, value))
    return None


def _read_file(item: Any) -> Optional[FileCandidate]:
    if not isinstance(item, dict):
        return None
    file_id = _first_str(item, "id", "file_id", "fileId")
    if not file_id:
        return None
    try:
        size = int(item.get("size") or item.get("bytes") or item.get("size_bytes") or 0)
    except (TypeError, ValueError):
        size = 0
    name = _first_str(item, "short_name", "name", "filename", "path")
    return FileCandidate(id=file_id, name=name, size_bytes=size)


def parse_job(item: Dict[str, Any]) -> ResolutionJob:
    """Normalizes one TorBox job row, tolerating the field-name variants the API has used."""
    files = item.get("files")
    if not isinstance(files, list) and isinstance(item.get("data"), dict):
        files = item["data"].get("files")

    info_hash = normalize_info_hash(_first_str(item, "hash", "info_hash"))
    if not info_hash:
        info_hash = extract_info_hash(_first_str(item, "magnet", "magnet_url"))

    return ResolutionJob(
        id=_first_str(item, "torrent_id", "torrentId", "id"),
        info_hash=info_hash,
        name=_first_str(item, "name"),
        state=_first_str(item, "download_state", "downloadState", "state", "status").lower(),
        progress_percent=_read_progress(item),
        active=_as_bool(item.get("active")),
        download_finished=bool(_as_bool(item.get("download_finished", item.get("downloadFinished")))),
        download_present=bool(_as_bool(item.get("download_present", item.get("downloadPresent")))),
        files=[f for f in (_read_file(x) for x in files or []) if f is not None],
    )


def pick_download_url(payload: Any) -> str:
    if isinstance(payload, str):
        return payload if _HTTP_URL.match(payload) else ""
    if not isinstance(payload, dict):
        return ""
    data = payload.get("data")
    candidates = []
    if isinstance(data, dict):
        candidates += [data.get("url"), data.get("link"), data.get("download")]
    candidates += [payload.get("url"), payload.get("link"), payload.get("download"), data]
    for candidate in candidates:
        if isinstance(candidate, str) and _HTTP_URL.match(candidate):
            return candidate
    return ""


class TorBoxService(JobQueueClient):
    """
    Client for the TorBox.app job-queue API.
    Each call walks the configured base URLs and returns the first success.
    """
    def __init__(self, client: Optional[httpx.AsyncClient] = None, base_urls: Optional[Sequence[str]] = None):
        self.base_urls = list(base_urls or settings.TORBOX_API_BASES)
        self.client = client or httpx.AsyncClient(timeout=settings.HTTP_TIMEOUT)
        # Per-instance so cached lookups never outlive the client or its event loop
        self._fetch_cached = alru_cache(maxsize=256, ttl=settings.AVAILABILITY_CACHE_TTL)(self._fetch_cached_hashes)

    async def _get_headers(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"Bearer {api_key}"}

    @staticmethod
    def _parse_body(resp: httpx.Response) -> Any:
        if not resp.content:
            return {}
        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}

    async def _request(
        self,
        method: str,
        path: str,
        api_key: Optional[str] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        request_headers = dict(headers or {})
        if api_key:
            request_headers.update(await self._get_headers(api_key))
        params = {k: v for k, v in (params or {}).items() if v is not None and v != ""}

        last_error: Optional[RemoteError] = None
        for base in self.base_urls:
            try:
                resp = await self.client.request(
                    method, f"{base}{path}", params=params or None, data=data, headers=request_headers
                )
            except httpx.HTTPError as e:
                logger.warning(f"TorBox {path} via {base} failed: {e}")
                last_error = RemoteError(f"TorBox request failed: {e}")
                continue

            payload = self._parse_body(resp)
            if resp.is_success and not (isinstance(payload, dict) and payload.get("success") is False):
                return payload

            error = classify_remote_error(resp.status_code, payload)
            if isinstance(error, (AlreadyExists, QueueLimit)):
                # Account-level answers; another base would say the same.
                raise error
            logger.warning(f"TorBox {path} via {base}: {error}")
            last_error = error

        raise last_error or RemoteError("TorBox request failed")

    async def create_job(self, api_key: str, magnet: str, display_name: Optional[str] = None) -> ResolutionJob:
        form = {"magnet": magnet, "allow_zip": "false", "as_queued": "false", "seed": "1"}
        if display_name:
            form["name"] = str(display_name)

        payload = await self._request("POST", "/api/torrents/createtorrent", api_key=api_key, data=form)
        data = payload.get("data") if isinstance(payload, dict) else None
        job = parse_job(data if isinstance(data, dict) else {})
        logger.info(f"TorBox create accepted (torrent id: {job.id or 'pending'})")
        return job

    async def list_jobs(
        self,
        api_key: str,
        bypass_cache: bool = True,
        offset: int = 0,
        limit: int = settings.JOB_LIST_LIMIT,
        job_id: Optional[str] = None,
    ) -> List[ResolutionJob]:
        payload = await self._request(
            "GET",
            "/api/torrents/mylist",
            api_key=api_key,
            params={
                "bypass_cache": "true" if bypass_cache else "false",
                "offset": offset,
                "limit": limit,
                "id": job_id,
            },
        )
        return [parse_job(item) for item in _first_list(payload) if isinstance(item, dict)]

    async def request_download_link(self, api_key: str, job_id: str, file_id: str) -> str:
        payload = await self._request(
            "GET",
            "/api/torrents/requestdl",
            params={
                "token": api_key,
                "torrent_id": job_id,
                "file_id": file_id or 0,
                "redirect": "false",
                "zip_link": "false",
            },
            headers={"Accept": "application/json,text/plain,*/*"},
        )
        url = pick_download_url(payload)
        if not url:
            raise RemoteError("TorBox requestdl returned no usable link")
        return url

    async def check_cached(self, api_key: str, info_hashes: Sequence[str]) -> Dict[str, bool]:
        hashes = tuple(sorted({h for h in (normalize_info_hash(x) for x in info_hashes) if h}))
        if not hashes:
            return {}
        try:
            return dict(await self._fetch_cached(api_key, hashes))
        except RemoteError as e:
            logger.error(f"TorBox checkcached failed: {e}")
            return {h: False for h in hashes}

    async def _fetch_cached_hashes(self, api_key: str, hashes: Tuple[str, ...]) -> Tuple[Tuple[str, bool], ...]:
        payload = await self._request(
            "GET",
            "/api/torrents/checkcached",
            api_key=api_key,
            params={"hash": ",".join(hashes), "format": "list", "list_files": "false"},
        )
        data = payload.get("data") if isinstance(payload, dict) else None
        found = {}
        if isinstance(data, list):
            for entry in data:
                # format=list yields either bare hashes or {hash, name, ...} rows
                raw = entry.get("hash") if isinstance(entry, dict) else entry
                h = normalize_info_hash(str(raw or ""))
                if h:
                    found[h] = True
        elif isinstance(data, dict):
            for raw, cached in data.items():
                h = normalize_info_hash(raw)
                if h:
                    found[h] = bool(cached)
        return tuple((h, found.get(h, False)) for h in hashes)
