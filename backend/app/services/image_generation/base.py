"""
Provider interface for scene illustration backends.

A provider accepts a prompt and returns, eventually, image bytes or a URL.
Submission and completion are separate calls so that slow backends can be
polled; ``generate_and_wait`` wraps both for callers that just want the
final image.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)


class GenerationStatus(str, Enum):
    """Status of a provider-side image job"""
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class GenerationRequest:
    """Prompt and sampling parameters for one image"""
    prompt: str
    negative_prompt: str = ""
    width: int = 1024
    height: int = 768
    seed: Optional[int] = None
    style_preset: Optional[str] = None
    extra_params: Dict[str, Any] = field(default_factory=dict)


@dataclass
class GenerationResult:
    """Outcome of a generation call.

    A completed result carries either ``image_data`` (raw bytes) or
    ``image_url`` (a location to download from).
    """
    success: bool
    status: GenerationStatus
    job_id: Optional[str] = None
    image_data: Optional[bytes] = None
    image_url: Optional[str] = None
    mime_type: str = "image/png"
    width: Optional[int] = None
    height: Optional[int] = None
    seed: Optional[int] = None
    error_message: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


class ImageGenerationProvider(ABC):
    """Abstract base class for image generation providers"""

    def __init__(self, server_url: str, api_key: Optional[str] = None, timeout: int = 300):
        self.server_url = server_url.rstrip('/')
        self.api_key = api_key
        self.timeout = timeout

    @property
    @abstractmethod
    def provider_name(self) -> str:
        pass

    @abstractmethod
    async def check_connection(self) -> bool:
        """True when the backend is reachable and accepting jobs"""
        pass

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Submit a job.

        Returns a result with ``job_id`` set and status QUEUED/PROCESSING,
        or COMPLETED directly for backends that answer synchronously.
        """
        pass

    @abstractmethod
    async def get_job_status(self, job_id: str) -> GenerationResult:
        pass

    @abstractmethod
    async def get_result(self, job_id: str) -> GenerationResult:
        """Fetch the image of a completed job"""
        pass

    @abstractmethod
    async def cancel_job(self, job_id: str) -> bool:
        pass

    async def close(self):
        """Release network resources; no-op for providers without any"""
        return None

    async def generate_and_wait(
        self,
        request: GenerationRequest,
        poll_interval: float = 2.0,
        max_wait: float = 300.0
    ) -> GenerationResult:
        """
        Submit a job and poll until it finishes or ``max_wait`` elapses.

        A timeout is reported as a FAILED result; the provider-side job is
        cancelled on a best-effort basis.
        """
        result = await self.generate(request)
        if not result.success or result.status == GenerationStatus.FAILED:
            return result
        if result.status == GenerationStatus.COMPLETED:
            if result.image_data is not None or result.image_url:
                return result
            if result.job_id:
                return await self.get_result(result.job_id)
            return result

        job_id = result.job_id
        if not job_id:
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                error_message="No job ID returned from generation request"
            )

        elapsed = 0.0
        while elapsed < max_wait:
            await asyncio.sleep(poll_interval)
            elapsed += poll_interval

            result = await self.get_job_status(job_id)
            logger.debug(f"[IMAGE_GEN] Job {job_id} status: {result.status}, elapsed: {elapsed}s")

            if result.status == GenerationStatus.COMPLETED:
                logger.info(f"[IMAGE_GEN] Job {job_id} completed, fetching result")
                return await self.get_result(job_id)
            if result.status in (GenerationStatus.FAILED, GenerationStatus.CANCELLED):
                logger.warning(f"[IMAGE_GEN] Job {job_id} ended with {result.status.value}: {result.error_message}")
                return result

        logger.warning(f"[IMAGE_GEN] Job {job_id} timed out after {max_wait}s, requesting cancellation")
        await self.cancel_job(job_id)
        return GenerationResult(
            success=False,
            status=GenerationStatus.FAILED,
            job_id=job_id,
            error_message=f"Generation timed out after {max_wait} seconds"
        )
