from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Sequence

from torstream.core.models import ResolutionJob


class JobQueueClient(ABC):
    """
    Abstract capabilities of a debrid job-queue service (TorBox, ...).
    Failures are raised as RemoteError subclasses (AlreadyExists, QueueLimit).
    """

    @abstractmethod
    async def create_job(self, api_key: str, magnet: str, display_name: Optional[str] = None) -> ResolutionJob:
        """
        Submits a magnet for server-side download.
        The returned job may carry only a transient queue id, or none at all.
        """
        pass

    @abstractmethod
    async def list_jobs(
        self,
        api_key: str,
        bypass_cache: bool = True,
        offset: int = 0,
        limit: int = 1000,
        job_id: Optional[str] = None,
    ) -> List[ResolutionJob]:
        pass

    @abstractmethod
    async def request_download_link(self, api_key: str, job_id: str, file_id: str) -> str:
        pass

    @abstractmethod
    async def check_cached(self, api_key: str, info_hashes: Sequence[str]) -> Dict[str, bool]:
        """Instant-availability lookup. Returns {info_hash: cached}."""
        pass
