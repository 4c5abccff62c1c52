"""
RunPod serverless image provider.

Talks to a RunPod serverless endpoint running an SDXL worker:
``POST /run`` submits, ``GET /status/{id}`` polls, ``POST /cancel/{id}``
cancels and ``GET /health`` reports worker availability.
"""

import base64
import logging
from typing import Optional, Dict, Any

import httpx

from .base import (
    ImageGenerationProvider,
    GenerationRequest,
    GenerationResult,
    GenerationStatus,
)

logger = logging.getLogger(__name__)

# RunPod job states -> provider-neutral status
RUNPOD_STATUS_MAP = {
    "IN_QUEUE": GenerationStatus.QUEUED,
    "IN_PROGRESS": GenerationStatus.PROCESSING,
    "COMPLETED": GenerationStatus.COMPLETED,
    "FAILED": GenerationStatus.FAILED,
    "CANCELLED": GenerationStatus.CANCELLED,
    "TIMED_OUT": GenerationStatus.FAILED,
}


class RunPodProvider(ImageGenerationProvider):
    """RunPod serverless endpoint provider"""

    def __init__(
        self,
        server_url: str,
        api_key: Optional[str] = None,
        timeout: int = 300,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        super().__init__(server_url, api_key, timeout)
        self._transport = transport
        self._http_client: Optional[httpx.AsyncClient] = None

    @property
    def provider_name(self) -> str:
        return "runpod"

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client"""
        if self._http_client is None or self._http_client.is_closed:
            headers = {"Content-Type": "application/json"}
            if self.api_key:
                headers["Authorization"] = f"Bearer {self.api_key}"

            self._http_client = httpx.AsyncClient(
                base_url=self.server_url,
                headers=headers,
                timeout=httpx.Timeout(self.timeout, connect=30.0),
                transport=self._transport,
            )
        return self._http_client

    async def close(self):
        if self._http_client and not self._http_client.is_closed:
            await self._http_client.aclose()
            self._http_client = None

    async def check_connection(self) -> bool:
        try:
            client = await self._get_client()
            response = await client.get("/health")
            if response.status_code != 200:
                return False
            workers = response.json().get("workers", {})
            # An endpoint scaled to zero still accepts jobs
            return isinstance(workers, dict)
        except httpx.HTTPError as e:
            logger.warning(f"[IMAGE_GEN] RunPod health check failed: {e}")
            return False

    def _build_input(self, request: GenerationRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "prompt": request.prompt,
            "negative_prompt": request.negative_prompt,
            "width": request.width,
            "height": request.height,
        }
        if request.seed is not None:
            payload["seed"] = request.seed
        payload.update(request.extra_params)
        return payload

    def _parse_job(self, data: Dict[str, Any], job_id: Optional[str] = None) -> GenerationResult:
        job_id = data.get("id") or job_id
        raw_status = str(data.get("status", "")).upper()
        status = RUNPOD_STATUS_MAP.get(raw_status)
        if status is None:
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                job_id=job_id,
                error_message=f"Unknown RunPod status '{raw_status}'",
            )

        if status in (GenerationStatus.FAILED, GenerationStatus.CANCELLED):
            error = data.get("error") or f"RunPod job {raw_status.lower()}"
            return GenerationResult(
                success=False, status=status, job_id=job_id, error_message=str(error)
            )

        if status != GenerationStatus.COMPLETED:
            return GenerationResult(success=True, status=status, job_id=job_id)

        return self._parse_output(data.get("output"), job_id, data)

    def _parse_output(self, output: Any, job_id: Optional[str], data: Dict[str, Any]) -> GenerationResult:
        """Completed jobs return base64 images, data URLs or a hosted image URL"""
        metadata = {"execution_time": data.get("executionTime"), "delay_time": data.get("delayTime")}

        if isinstance(output, list) and output:
            output = output[0]
        if isinstance(output, str):
            output = {"images": [output]}
        if not isinstance(output, dict):
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                job_id=job_id,
                error_message="No images found in job output",
            )

        images = output.get("images") or []
        if isinstance(images, str):
            images = [images]
        if images:
            encoded = images[0]
            if isinstance(encoded, dict):
                encoded = encoded.get("image") or encoded.get("data") or ""
            mime_type = "image/png"
            if encoded.startswith("data:"):
                header, _, encoded = encoded.partition(",")
                mime_type = header[5:].split(";")[0] or mime_type
            try:
                image_data = base64.b64decode(encoded, validate=True)
            except ValueError as e:
                return GenerationResult(
                    success=False,
                    status=GenerationStatus.FAILED,
                    job_id=job_id,
                    error_message=f"Invalid image payload: {e}",
                )
            return GenerationResult(
                success=True,
                status=GenerationStatus.COMPLETED,
                job_id=job_id,
                image_data=image_data,
                mime_type=mime_type,
                seed=output.get("seed"),
                metadata=metadata,
            )

        image_url = output.get("image_url")
        if image_url:
            return GenerationResult(
                success=True,
                status=GenerationStatus.COMPLETED,
                job_id=job_id,
                image_url=image_url,
                seed=output.get("seed"),
                metadata=metadata,
            )

        return GenerationResult(
            success=False,
            status=GenerationStatus.FAILED,
            job_id=job_id,
            error_message="No images found in job output",
        )

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        try:
            client = await self._get_client()
            response = await client.post("/run", json={"input": self._build_input(request)})

            if response.status_code != 200:
                logger.error(f"[IMAGE_GEN] RunPod submission failed: {response.status_code} {response.text}")
                return GenerationResult(
                    success=False,
                    status=GenerationStatus.FAILED,
                    error_message=f"Failed to submit job: HTTP {response.status_code}",
                )

            data = response.json()
            if not data.get("id"):
                return GenerationResult(
                    success=False,
                    status=GenerationStatus.FAILED,
                    error_message="No job id returned from RunPod",
                )

            logger.info(f"[IMAGE_GEN] RunPod job submitted: {data['id']}")
            result = self._parse_job(data)
            result.metadata.setdefault("prompt", request.prompt)
            return result

        except httpx.HTTPError as e:
            logger.error(f"[IMAGE_GEN] Error submitting RunPod job: {e}")
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                error_message=str(e),
            )

    async def get_job_status(self, job_id: str) -> GenerationResult:
        try:
            client = await self._get_client()
            response = await client.get(f"/status/{job_id}")
            if response.status_code != 200:
                return GenerationResult(
                    success=False,
                    status=GenerationStatus.FAILED,
                    job_id=job_id,
                    error_message=f"Status check failed: HTTP {response.status_code}",
                )
            return self._parse_job(response.json(), job_id)
        except httpx.HTTPError as e:
            logger.error(f"[IMAGE_GEN] Error getting RunPod job status: {e}")
            return GenerationResult(
                success=False,
                status=GenerationStatus.FAILED,
                job_id=job_id,
                error_message=str(e),
            )

    async def get_result(self, job_id: str) -> GenerationResult:
        # The status payload of a completed job already carries its output
        return await self.get_job_status(job_id)

    async def cancel_job(self, job_id: str) -> bool:
        try:
            client = await self._get_client()
            response = await client.post(f"/cancel/{job_id}")
            return response.status_code == 200
        except httpx.HTTPError as e:
            logger.error(f"[IMAGE_GEN] Error cancelling RunPod job {job_id}: {e}")
            return False
