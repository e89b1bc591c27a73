import re
from string import Template
from typing import Dict, List, Optional, Sequence

from loguru import logger

from torstream.core.models import FileCandidate, SelectionCriteria, SubtitleCandidate

VIDEO_EXTENSIONS = (".mkv", ".mp4", ".avi", ".mov", ".wmv", ".m4v", ".webm", ".mpg", ".mpeg", ".ts", ".m2ts")
SUBTITLE_EXTENSIONS = (".srt", ".vtt")

# Episode naming conventions. $s/$e are zero-padded to two digits,
# $season/$episode are the bare numbers. "range" entries veto a direct match
# (multi-episode files such as S01E01-E03 or S01E01E02). Tokens are bounded
# by any non-alphanumeric character, so underscores separate them too.
EPISODE_PATTERNS_VERSION = 2
EPISODE_PATTERNS: List[Dict[str, str]] = [
    {"kind": "direct", "pattern": r"(?<![a-z0-9])s$s\s*[._\- ]?e$e(?![a-z0-9])"},
    {"kind": "direct", "pattern": r"(?<![a-z0-9])$season\s*x\s*0*$episode(?![a-z0-9])"},
    {"kind": "direct", "pattern": r"(?<![a-z0-9])season\s*0*$season\s*(?:episode|ep|e)\s*0*$episode(?![a-z0-9])"},
    # Hungarian: "1. evad 2. resz"
    {"kind": "direct", "pattern": r"(?<![a-z0-9])0*$season\s*[._\- ]*(?:evad|évad)\s*[._\- ]*0*$episode\s*[._\- ]*(?:resz|rész|epizod|epizód)(?![a-z0-9])"},
    {"kind": "range", "pattern": r"(?<![a-z0-9])s$s\s*[._\- ]?e$e\s*-\s*e?\d{1,2}(?![a-z0-9])"},
    {"kind": "range", "pattern": r"(?<![a-z0-9])$season\s*x\s*0*$episode\s*-\s*\d{1,2}(?![a-z0-9])"},
    {"kind": "range", "pattern": r"(?<![a-z0-9])s$s\s*[._\- ]?e$e\s*e\d{1,2}(?![a-z0-9])"},
]

# First match wins; anything unmatched is treated as English.
SUBTITLE_LANGUAGES = [
    ("hu", r"\b(?:hu|hun|hungarian|magyar)\b"),
    ("en", r"\b(?:en|eng|english)\b"),
    ("de", r"\b(?:de|ger|german|deutsch)\b"),
    ("fr", r"\b(?:fr|fre|french)\b"),
    ("es", r"\b(?:es|spa|spanish)\b"),
    ("it", r"\b(?:it|ita|italian)\b"),
    ("pl", r"\b(?:pl|pol|polish)\b"),
    ("ro", r"\b(?:ro|ron|romanian)\b"),
    ("cs", r"\b(?:cs|cze|czech)\b"),
    ("sk", r"\b(?:sk|slk|slovak)\b"),
]

_HUNGARIAN_MARKER = re.compile(r"\b(?:hu|hun|magyar)\b")
_ENGLISH_MARKER = re.compile(r"\b(?:en|eng|english)\b")
_EXTENSION = re.compile(r"\.[a-z0-9]{2,5}$", re.IGNORECASE)


def is_video_file(name: str) -> bool:
    return (name or "").lower().endswith(VIDEO_EXTENSIONS)


def is_subtitle_file(name: str) -> bool:
    return (name or "").lower().endswith(SUBTITLE_EXTENSIONS)


def _compile_episode_patterns(season: int, episode: int, kind: str) -> List[re.Pattern]:
    values = {"s": f"{season:02d}", "e": f"{episode:02d}", "season": str(season), "episode": str(episode)}
    return [
        re.compile(Template(p["pattern"]).substitute(values), re.IGNORECASE)
        for p in EPISODE_PATTERNS
        if p["kind"] == kind
    ]


def is_episode_match(name: str, season: int, episode: int) -> bool:
    """True for a single-episode file of SxxEyy; multi-episode ranges never match."""
    if not season or not episode or not name:
        return False
    text = name.lower()
    if not any(p.search(text) for p in _compile_episode_patterns(season, episode, "direct")):
        return False
    return not any(p.search(text) for p in _compile_episode_patterns(season, episode, "range"))


def detect_subtitle_lang(name: str) -> str:
    text = (name or "").lower()
    for lang, pattern in SUBTITLE_LANGUAGES:
        if re.search(pattern, text):
            return lang
    return "en"


class FileSelector:
    @staticmethod
    def select_video_file(files: Sequence[FileCandidate], criteria: SelectionCriteria) -> Optional[str]:
        """
        Picks one file id. Pure function of its inputs.

        1. season+episode: largest single-episode video match, else None.
           A series request never falls back to an unrelated file.
        2. preferred file name: first video whose name equals it, or where one
           name ends with the other (case-insensitive).
        3. largest video file.
        4. no video at all: the first file, as a low-confidence signal.
        """
        candidates = [f for f in files if f.id]
        if not candidates:
            return None

        videos = [f for f in candidates if is_video_file(f.name)]

        if criteria.is_episode:
            season, episode = criteria.season, criteria.episode
            matches = [f for f in videos if is_episode_match(f.name, season, episode)]
            if not matches:
                logger.debug(f"No file matched S{season:02d}E{episode:02d} among {len(videos)} videos")
                return None
            best = max(matches, key=lambda f: f.size_bytes)
            logger.info(f"Selected episode file: {best.name}")
            return best.id

        preferred = (criteria.preferred_file_name or "").lower()
        if preferred:
            for f in videos:
                name = f.name.lower()
                if name == preferred or name.endswith(preferred) or preferred.endswith(name):
                    logger.info(f"Selected preferred file: {f.name}")
                    return f.id

        if videos:
            best = max(videos, key=lambda f: f.size_bytes)
            logger.info(f"Selected largest video file: {best.name}")
            return best.id

        logger.warning(f"No video files present, falling back to first file: {candidates[0].name}")
        return candidates[0].id

    @staticmethod
    def select_subtitles(
        files: Sequence[FileCandidate],
        preferred_name: Optional[str] = None,
        limit: int = 4,
    ) -> List[SubtitleCandidate]:
        preferred = (preferred_name or "").lower()
        stem = _EXTENSION.sub("", preferred) if preferred else ""

        scored = []
        for f in files:
            if not f.id or not is_subtitle_file(f.name):
                continue
            lowered = f.name.lower()
            score = 0
            if stem and stem in lowered:
                score += 4
            if _HUNGARIAN_MARKER.search(lowered):
                score += 3
            if _ENGLISH_MARKER.search(lowered):
                score += 2
            scored.append((score, f))

        scored.sort(key=lambda item: (-item[0], item[1].name))
        return [
            SubtitleCandidate(id=f.id, lang=detect_subtitle_lang(f.name), name=f.name)
            for _, f in scored[:max(limit, 0)]
        ]


class VideoParser:
    @staticmethod
    def get_quality(title: str) -> str:
        title = (title or "").lower()
        if any(x in title for x in ["2160", "4k", "uhd"]):
            return "2160p"
        if "1080" in title:
            return "1080p"
        if "720" in title:
            return "720p"
        return ""

    @staticmethod
    def format_size(size_bytes: int) -> str:
        if not size_bytes or size_bytes <= 0:
            return ""
        units = ["B", "KB", "MB", "GB", "TB"]
        size = float(size_bytes)
        unit = 0
        while size >= 1024 and unit < len(units) - 1:
            size /= 1024
            unit += 1
        precision = 0 if size >= 10 or unit == 0 else 1
        return f"{size:.{precision}f} {units[unit]}"
