"""
Offline provider used when no image backend is configured.

Returns the same small PNG for every prompt so the rest of the pipeline
(storage, versioning, active-version swaps) can run without a GPU.
"""

import base64
import hashlib
import logging
import uuid
from typing import Dict

from .base import (
    ImageGenerationProvider,
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
)

logger = logging.getLogger(__name__)

# 1x1 transparent PNG
PLACEHOLDER_PNG = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)


class StubProvider(ImageGenerationProvider):
    """Completes every job immediately with a placeholder image"""

    def __init__(self, server_url: str = "stub://local", api_key=None, timeout: int = 300):
        super().__init__(server_url, api_key, timeout)
        self._jobs: Dict[str, GenerationResult] = {}

    @property
    def provider_name(self) -> str:
        return "stub"

    async def check_connection(self) -> bool:
        return True

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        job_id = str(uuid.uuid4())
        seed = request.seed
        if seed is None:
            # Stable per prompt so repeated runs look identical
            seed = int(hashlib.sha256(request.prompt.encode("utf-8")).hexdigest()[:8], 16)
        result = GenerationResult(
            success=True,
            status=GenerationStatus.COMPLETED,
            job_id=job_id,
            image_data=PLACEHOLDER_PNG,
            mime_type="image/png",
            width=1,
            height=1,
            seed=seed,
            metadata={"provider": self.provider_name},
        )
        self._jobs[job_id] = result
        logger.debug(f"[IMAGE_GEN] Stub job {job_id} completed")
        return result

    async def get_job_status(self, job_id: str) -> GenerationResult:
        if job_id not in self._jobs:
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                job_id=job_id,
                error_message="Unknown job",
            )
        return self._jobs[job_id]

    async def get_result(self, job_id: str) -> GenerationResult:
        return await self.get_job_status(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        return self._jobs.pop(job_id, None) is not None
