from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol
import logging

import httpx

from ..exceptions import ExternalServiceError

logger = logging.getLogger(__name__)

RUNNING = "running"
SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass
class RenderStatus:
    state: str
    output_url: Optional[str] = None
    thumbnail_url: Optional[str] = None
    content: Optional[str] = None
    error: Optional[str] = None


class RenderProvider(Protocol):
    name: str

    async def get_status(self, external_job_id: str) -> RenderStatus: ...


class ShotstackProvider:
    """Polls Shotstack render jobs."""
    name = "shotstack"

    def __init__(self, api_key: str, base_url: str = "https://api.shotstack.io/v1",
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_key = api_key or ""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_status(self, external_job_id: str) -> RenderStatus:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(
                f"{self.base_url}/render/{external_job_id}",
                headers={"x-api-key": self.api_key},
            )
        if response.status_code >= 400:
            raise ExternalServiceError(self.name, f"status lookup failed: {response.text[:200]}", response.status_code)
        data = (response.json() or {}).get("response") or {}
        status = data.get("status")
        if status == "done":
            return RenderStatus(SUCCEEDED, output_url=data.get("url"), thumbnail_url=data.get("thumbnail"))
        if status == "failed":
            return RenderStatus(FAILED, error=data.get("error") or "Render failed")
        return RenderStatus(RUNNING)


class ReplicateProvider:
    """Starts and polls Replicate predictions (Whisper transcription, video inpainting)."""
    name = "replicate"

    def __init__(self, api_token: str, base_url: str = "https://api.replicate.com/v1",
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.api_token = api_token or ""
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    @property
    def headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}", "Content-Type": "application/json"}

    async def start_transcription(self, audio_url: str, version: str, timeout: float) -> str:
        """Start a Whisper prediction and return its id.

        Raises ``httpx.TimeoutException`` when Replicate does not answer within ``timeout``.
        """
        payload: Dict[str, Any] = {
            "version": version,
            "input": {
                "audio": audio_url,
                "model": "large-v3",
                "language": "auto",
                "translate": False,
                "temperature": 0,
                "transcription": "srt",
                "suppress_tokens": "-1",
                "logprob_threshold": -1,
                "no_speech_threshold": 0.6,
                "condition_on_previous_text": True,
                "compression_ratio_threshold": 2.4,
                "temperature_increment_on_fallback": 0.2,
            },
        }
        async with httpx.AsyncClient(timeout=timeout, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/predictions", json=payload, headers=self.headers)
        if response.status_code >= 400:
            logger.error(f"Whisper start error {response.status_code}: {response.text[:300]}")
            raise ExternalServiceError(self.name, "Whisper transcription failed to start", response.status_code)
        prediction_id = (response.json() or {}).get("id")
        if not prediction_id:
            raise ExternalServiceError(self.name, "No prediction id returned")
        return prediction_id

    async def get_status(self, external_job_id: str) -> RenderStatus:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            response = await client.get(f"{self.base_url}/predictions/{external_job_id}", headers=self.headers)
        if response.status_code >= 400:
            raise ExternalServiceError(self.name, f"status lookup failed: {response.text[:200]}", response.status_code)
        data = response.json() or {}
        status = data.get("status")
        if status == "succeeded":
            output = data.get("output")
            if isinstance(output, dict):
                # whisper returns {"transcription": "<srt>", ...}
                return RenderStatus(SUCCEEDED, content=output.get("transcription") or output.get("srt_file"),
                                    output_url=output.get("srt_file"))
            if isinstance(output, list):
                output = output[0] if output else None
            return RenderStatus(SUCCEEDED, output_url=output)
        if status in ("failed", "canceled"):
            return RenderStatus(FAILED, error=data.get("error") or f"Prediction {status}")
        return RenderStatus(RUNNING)
