from typing import List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse
from loguru import logger
from pydantic import BaseModel

from torstream.core.config import settings
from torstream.core.errors import (
    DownloadError,
    InvalidInput,
    NotReady,
    QueueLimit,
    RemoteError,
    SelectionNotFound,
    TorrentError,
    TorStreamError,
)
from torstream.core.models import SearchResult
from torstream.services.resolver import ResolverService
from torstream.services.torbox import TorBoxService
from torstream.utils.torrent import build_magnet, extract

router = APIRouter()

_resolver: Optional[ResolverService] = None


def get_resolver() -> ResolverService:
    global _resolver
    if _resolver is None:
        _resolver = ResolverService(TorBoxService())
    return _resolver


# --- Models ---

class StreamsRequest(BaseModel):
    api_key: Optional[str] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    results: List[SearchResult] = []


# --- Helpers ---

def _api_key(request: Request, explicit: Optional[str] = None) -> str:
    if explicit:
        return explicit
    auth = request.headers.get("authorization", "")
    if auth.lower().startswith("bearer "):
        return auth[7:].strip()
    return settings.TORBOX_API_KEY or ""


def error_response(error: TorStreamError) -> JSONResponse:
    """Maps typed failures to HTTP statuses."""
    headers = None
    if isinstance(error, SelectionNotFound):
        status = 404
    elif isinstance(error, (InvalidInput, TorrentError)):
        status = 400
    elif isinstance(error, NotReady):
        status = 409
        headers = {"Retry-After": "10"}
    elif isinstance(error, QueueLimit):
        status = 429
    elif isinstance(error, (DownloadError, RemoteError)):
        status = 502
    else:
        status = 500
    return JSONResponse(status_code=status, content={"error": str(error), "kind": error.kind}, headers=headers)


# --- Endpoints ---

@router.get("/health")
async def health():
    return {"ok": True, "version": settings.VERSION}


@router.post("/streams")
async def streams(body: StreamsRequest, request: Request, resolver: ResolverService = Depends(get_resolver)):
    """
    Labels indexer rows (searched elsewhere) with cache state and hands out
    selection keys for /resolve.
    """
    try:
        options = await resolver.describe_results(
            _api_key(request, body.api_key), body.results, body.season, body.episode
        )
    except TorStreamError as e:
        return error_response(e)
    return {"streams": [o.model_dump() for o in options]}


@router.get("/resolve/{selection_key}")
async def resolve(
    selection_key: str,
    request: Request,
    api_key: Optional[str] = Query(default=None),
    redirect: bool = Query(default=True),
    subtitles: bool = Query(default=False),
    resolver: ResolverService = Depends(get_resolver),
):
    logger.info(f"Resolve request for selection {selection_key}")
    try:
        result = await resolver.resolve(_api_key(request, api_key), selection_key, include_subtitles=subtitles)
    except TorStreamError as e:
        logger.warning(f"Resolve {selection_key} failed: {e.kind} {e}")
        return error_response(e)

    if redirect:
        return RedirectResponse(result.url, status_code=302)
    return result.model_dump()


@router.post("/torrents/metadata")
async def torrent_metadata(request: Request):
    try:
        metadata = extract(await request.body())
    except TorrentError as e:
        return error_response(e)
    return {"metadata": metadata.model_dump(), "magnet": build_magnet(metadata)}
