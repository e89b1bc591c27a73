from typing import Any, Optional

QUEUE_LIMIT_CODES = {"ACTIVE_LIMIT", "COOLDOWN_LIMIT", "MONTHLY_LIMIT"}


class TorStreamError(Exception):
    """Base exception. ``kind`` is the stable failure tag surfaced to callers."""

    kind = "ERROR"


class TorrentError(TorStreamError):
    """Malformed torrent bytes. Never retried."""


class InvalidEncoding(TorrentError):
    kind = "INVALID_ENCODING"


class InvalidTorrent(TorrentError):
    kind = "INVALID_TORRENT"


class InvalidInput(TorStreamError):
    """Missing or unusable caller input (api key, magnet, info hash)."""

    kind = "INVALID_INPUT"


class SelectionNotFound(InvalidInput):
    """Selection key unknown, expired or owned by another account."""


class RemoteError(TorStreamError):
    """Generic or transient failure reported by the job-queue service."""

    kind = "REMOTE_ERROR"

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        code: Optional[str] = None,
        detail: Optional[str] = None,
    ):
        super().__init__(message)
        self.status = status
        self.code = code
        self.detail = detail


class AlreadyExists(RemoteError):
    kind = "ALREADY_EXISTS"


class QueueLimit(RemoteError):
    """Account-level throttling (active/cooldown/monthly limits)."""

    kind = "QUEUE_LIMIT"


class DownloadError(TorStreamError):
    """The remote job reached a terminal failure state."""

    kind = "DOWNLOAD_ERROR"


class NotReady(TorStreamError):
    """Deadline elapsed before a link could be produced."""

    kind = "NOT_READY"


def classify_remote_error(status: Optional[int], payload: Any) -> RemoteError:
    """
    Maps a failed remote response to the matching RemoteError subclass.
    """
    code = ""
    detail = ""
    if isinstance(payload, dict):
        code = str(payload.get("error") or payload.get("code") or "")
        detail = str(payload.get("detail") or payload.get("message") or payload.get("raw") or "")
    elif payload:
        detail = str(payload)

    message = f"TorBox request failed ({status})"
    if code or detail:
        message = f"{message}: {code or detail}"

    if status == 429 or code.upper() in QUEUE_LIMIT_CODES:
        return QueueLimit(message, status=status, code=code, detail=detail)

    text = f"{code} {detail}".lower()
    if "already" in text or ("exist" in text and "not exist" not in text):
        return AlreadyExists(message, status=status, code=code, detail=detail)

    return RemoteError(message, status=status, code=code, detail=detail)
