from typing import List, Optional
from pydantic import BaseModel, Field


class TorrentFile(BaseModel):
    index: int
    name: str
    size_bytes: int = 0


class TorrentMetadata(BaseModel):
    info_hash: str
    name: str = ""
    trackers: List[str] = []
    files: List[TorrentFile] = []


class FileCandidate(BaseModel):
    id: str
    name: str
    size_bytes: int = 0


class SelectionCriteria(BaseModel):
    preferred_file_name: Optional[str] = None
    season: Optional[int] = Field(default=None, gt=0)
    episode: Optional[int] = Field(default=None, gt=0)

    @property
    def is_episode(self) -> bool:
        return self.season is not None and self.episode is not None


class SubtitleCandidate(BaseModel):
    id: str
    lang: str
    name: str


class ResolutionJob(BaseModel):
    """Remote-owned job row, normalized from whatever shape the service returns."""
    id: str = ""
    info_hash: str = ""
    name: str = ""
    state: str = ""
    progress_percent: Optional[float] = None
    active: Optional[bool] = None
    download_finished: bool = False
    download_present: bool = False
    files: List[FileCandidate] = []


class SubtitleLink(BaseModel):
    id: str
    lang: str
    url: str


class ResolveResult(BaseModel):
    url: str
    subtitles: List[SubtitleLink] = []


class SearchResult(BaseModel):
    """Indexer row as produced by the external search collaborator."""
    title: str
    magnet: str
    info_hash: Optional[str] = None
    file_name: Optional[str] = None
    category: str = ""
    seeders: int = 0
    size_bytes: int = 0


class StreamSelection(BaseModel):
    account: str
    magnet: str
    info_hash: str
    file_name: Optional[str] = None
    season: Optional[int] = None
    episode: Optional[int] = None
    cached: Optional[bool] = None


class StreamOption(BaseModel):
    selection_key: str
    title: str
    info_hash: str
    quality: str = ""
    size: str = ""
    category: str = ""
    seeders: int = 0
    cached: Optional[bool] = None
    cache_tag: str = "[UNKNOWN]"
