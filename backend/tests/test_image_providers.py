"""Tests for the image providers: RunPod over a mocked transport, the stub and the factory."""

import pytest
import base64
import json
import httpx
import sys
import os

# Add the backend directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from app.services.image_generation import create_provider, RunPodProvider, StubProvider
from app.services.image_generation.base import GenerationRequest, GenerationStatus
from app.services.image_generation.stub import PLACEHOLDER_PNG

PNG_B64 = base64.b64encode(PLACEHOLDER_PNG).decode()


class FakeRunPod:
    """Scripted RunPod endpoint: status responses are served in order"""

    def __init__(self, statuses, submit_status=200):
        self.statuses = list(statuses)
        self.submit_status = submit_status
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path.endswith("/run"):
            if self.submit_status != 200:
                return httpx.Response(self.submit_status, text="unavailable")
            return httpx.Response(200, json={"id": "job-42", "status": "IN_QUEUE"})
        if "/status/" in path:
            # The last scripted status repeats
            status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
            return httpx.Response(200, json=status)
        if "/cancel/" in path:
            return httpx.Response(200, json={"id": "job-42", "status": "CANCELLED"})
        if path.endswith("/health"):
            return httpx.Response(200, json={"workers": {"idle": 0, "running": 1}})
        return httpx.Response(404)


def _provider(fake):
    return RunPodProvider(
        "https://api.runpod.ai/v2/endpoint",
        api_key="secret",
        transport=httpx.MockTransport(fake),
    )


def _request():
    return GenerationRequest(prompt="A dark lighthouse", negative_prompt="text", width=512, height=384, seed=5)


class TestRunPodProvider:

    @pytest.mark.asyncio
    async def test_submit_poll_and_decode(self):
        fake = FakeRunPod([
            {"id": "job-42", "status": "IN_PROGRESS"},
            {"id": "job-42", "status": "COMPLETED", "executionTime": 900,
             "output": {"images": [f"data:image/png;base64,{PNG_B64}"], "seed": 5}},
        ])
        provider = _provider(fake)

        result = await provider.generate_and_wait(_request(), poll_interval=0.001, max_wait=1)
        await provider.close()

        assert result.success
        assert result.status == GenerationStatus.COMPLETED
        assert result.image_data == PLACEHOLDER_PNG
        assert result.seed == 5
        assert result.metadata["execution_time"] == 900

        submit = fake.requests[0]
        assert submit.headers["Authorization"] == "Bearer secret"
        assert json.loads(submit.content) == {"input": {
            "prompt": "A dark lighthouse", "negative_prompt": "text", "width": 512, "height": 384, "seed": 5,
        }}

    @pytest.mark.asyncio
    async def test_hosted_image_url(self):
        fake = FakeRunPod([
            {"id": "job-42", "status": "COMPLETED", "output": {"image_url": "https://cdn.example.com/a.png"}},
        ])
        result = await _provider(fake).generate_and_wait(_request(), poll_interval=0.001, max_wait=1)

        assert result.success
        assert result.image_url == "https://cdn.example.com/a.png"
        assert result.image_data is None

    @pytest.mark.asyncio
    async def test_failed_job(self):
        fake = FakeRunPod([{"id": "job-42", "status": "FAILED", "error": "CUDA out of memory"}])
        result = await _provider(fake).generate_and_wait(_request(), poll_interval=0.001, max_wait=1)

        assert not result.success
        assert result.status == GenerationStatus.FAILED
        assert result.error_message == "CUDA out of memory"

    @pytest.mark.asyncio
    async def test_submit_error(self):
        result = await _provider(FakeRunPod([], submit_status=503)).generate(_request())

        assert not result.success
        assert "503" in result.error_message

    @pytest.mark.asyncio
    async def test_timeout_requests_cancellation(self):
        fake = FakeRunPod([{"id": "job-42", "status": "IN_QUEUE"}] * 10)
        result = await _provider(fake).generate_and_wait(_request(), poll_interval=0.01, max_wait=0.03)

        assert not result.success
        assert "timed out" in result.error_message
        assert fake.requests[-1].url.path.endswith("/cancel/job-42")

    @pytest.mark.asyncio
    async def test_network_error_is_a_failed_result(self):
        def boom(request):
            raise httpx.ConnectError("refused", request=request)

        result = await _provider(boom).generate(_request())

        assert not result.success
        assert result.status == GenerationStatus.FAILED

    @pytest.mark.asyncio
    async def test_health(self):
        assert await _provider(FakeRunPod([])).check_connection() is True


class TestStubProvider:

    @pytest.mark.asyncio
    async def test_completes_immediately_with_stable_seed(self):
        provider = StubProvider()
        request = GenerationRequest(prompt="Same prompt")

        first = await provider.generate_and_wait(request)
        second = await provider.generate_and_wait(request)

        assert first.success and first.image_data == PLACEHOLDER_PNG
        assert first.seed == second.seed
        assert (await provider.get_job_status(first.job_id)).status == GenerationStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_explicit_seed_wins(self):
        result = await StubProvider().generate(GenerationRequest(prompt="x", seed=99))
        assert result.seed == 99


class TestCreateProvider:

    def test_known_providers(self):
        assert isinstance(create_provider("stub"), StubProvider)
        assert isinstance(create_provider("RunPod"), RunPodProvider)

    def test_unknown_provider(self):
        with pytest.raises(ValueError):
            create_provider("dalle")
