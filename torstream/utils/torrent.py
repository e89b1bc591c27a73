import base64
import binascii
import hashlib
import re
from typing import Any, Iterable, List, Optional
from urllib.parse import parse_qs, quote, urlparse

from loguru import logger

from torstream.core.errors import InvalidEncoding, InvalidTorrent
from torstream.core.models import TorrentFile, TorrentMetadata
from torstream.utils.bencode import bdecode, decode, decode_key, skip

SUPPORTED_TRACKER_SCHEMES = ("udp", "http", "https", "ws", "wss")
_HEX40 = re.compile(r"^[a-f0-9]{40}$")


def _text(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        return bytes(value).decode("utf-8", errors="replace")
    return str(value) if value is not None else ""


def _flatten(values: Any) -> Iterable[Any]:
    if isinstance(values, list):
        for v in values:
            yield from _flatten(v)
    else:
        yield values


def _collect_trackers(announce: Any, announce_list: Any) -> List[str]:
    trackers: List[str] = []
    seen = set()
    for raw in [announce, *_flatten(announce_list or [])]:
        url = _text(raw).strip()
        if not url or url in seen:
            continue
        scheme = urlparse(url).scheme.lower()
        if scheme not in SUPPORTED_TRACKER_SCHEMES:
            continue
        seen.add(url)
        trackers.append(url)
    return trackers


def _files_from_info(info: dict) -> List[TorrentFile]:
    name = _text(info.get(b"name.utf-8") or info.get(b"name"))

    if b"length" in info:
        length = info.get(b"length")
        return [TorrentFile(index=0, name=name, size_bytes=length if isinstance(length, int) else 0)]

    entries = info.get(b"files")
    if not isinstance(entries, list):
        raise InvalidTorrent("info dictionary has neither 'length' nor 'files'")

    files: List[TorrentFile] = []
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            continue
        parts = entry.get(b"path.utf-8") or entry.get(b"path") or []
        if not isinstance(parts, list):
            continue
        path = "/".join(_text(p) for p in parts)
        length = entry.get(b"length")
        files.append(TorrentFile(index=index, name=path, size_bytes=length if isinstance(length, int) else 0))
    return files


def extract(buffer: bytes) -> TorrentMetadata:
    """
    Derives info hash, trackers and the file list from raw .torrent bytes.

    The info hash is SHA-1 over the exact byte range of the ``info`` value as
    it appears in the buffer, located by walking top-level keys in whatever
    order they occur. Re-encoding the decoded dict is not byte-identical for
    every torrent in the wild, so it is never used for hashing.
    """
    if not buffer or buffer[:1] != b"d":
        raise InvalidTorrent("Torrent data must start with a dictionary")

    info_start = info_end = None
    announce = None
    announce_list = None
    pos = 1
    while True:
        if pos >= len(buffer):
            raise InvalidEncoding("Unterminated top-level dictionary")
        if buffer[pos:pos + 1] == b"e":
            break
        key, pos = decode_key(buffer, pos)
        if key == b"info":
            info_start = pos
            pos = info_end = skip(buffer, pos)
        elif key == b"announce":
            announce, pos = decode(buffer, pos)
        elif key == b"announce-list":
            announce_list, pos = decode(buffer, pos)
        else:
            pos = skip(buffer, pos)

    if info_start is None:
        raise InvalidTorrent("Torrent has no 'info' dictionary")

    raw_info = buffer[info_start:info_end]
    info = bdecode(raw_info)

    if not isinstance(info, dict):
        raise InvalidTorrent("'info' is not a dictionary")

    info_hash = hashlib.sha1(raw_info).hexdigest()
    files = _files_from_info(info)
    name = _text(info.get(b"name.utf-8") or info.get(b"name"))
    trackers = _collect_trackers(announce, announce_list)

    logger.debug(f"Parsed torrent {info_hash}: {len(files)} files, {len(trackers)} trackers")
    return TorrentMetadata(info_hash=info_hash, name=name, trackers=trackers, files=files)


def normalize_info_hash(value: Optional[str]) -> str:
    """
    Accepts a 40-char hex or 32-char base32 btih (optionally ``urn:btih:``
    prefixed) and returns lowercase hex, or "" when unusable.
    """
    v = (value or "").strip()
    if v.lower().startswith("urn:btih:"):
        v = v.split(":", 2)[-1]

    if _HEX40.match(v.lower()):
        return v.lower()

    if len(v) == 32:
        try:
            return binascii.hexlify(base64.b32decode(v.upper())).decode("ascii")
        except (binascii.Error, ValueError):
            return ""
    return ""


def normalize_magnet(value: Optional[str]) -> str:
    magnet = (value or "").strip()
    if not magnet.lower().startswith("magnet:?"):
        return ""
    return magnet


def extract_info_hash(magnet: Optional[str]) -> str:
    """Lowercase hex info hash from a magnet's ``xt`` parameter, or ""."""
    magnet = normalize_magnet(magnet)
    if not magnet:
        return ""
    query = parse_qs(urlparse(magnet).query)
    for xt in query.get("xt", []):
        if xt.lower().startswith("urn:btih:"):
            info_hash = normalize_info_hash(xt)
            if info_hash:
                return info_hash
    return ""


def build_magnet(metadata: TorrentMetadata) -> str:
    parts = [f"xt=urn:btih:{metadata.info_hash}"]
    if metadata.name:
        parts.append(f"dn={quote(metadata.name)}")
    for tracker in metadata.trackers:
        parts.append(f"tr={quote(tracker, safe='')}")
    return "magnet:?" + "&".join(parts)
