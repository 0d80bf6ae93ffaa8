"""
GPTProto Provider
=================

Aggregator API fronting several image and video models behind one key.

Features:
- Text-to-image and image-edit (Gemini, Seedream, Wan)
- Image-to-video with optional last frame (Sora 2 Pro, Seedance, Hailuo, Wan)
- Script generation through Gemini ``generateContent`` with a video part
- Unified task result endpoint for polling
"""

import logging
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Optional, List, Dict, Any, Tuple
from urllib.parse import urlparse
import httpx

from .base import (
    BaseGenerationClient,
    GenerationKind,
    GenerationRequest,
    GenerationResult,
    StatusResult,
    TaskStatus,
)
from .factory import register_client
from ..core.exceptions import ProviderError, GenerationError, ValidationError
from ..core.security import redact_api_key

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelSpec:
    """Endpoint and request shape of one provider model."""

    path: str
    default_params: Dict[str, Any] = field(default_factory=dict)
    last_frame_key: Optional[str] = None
    duration_options: Tuple[int, ...] = ()


IMAGE_MODELS: Dict[str, ModelSpec] = {
    "gemini": ModelSpec(
        "google/gemini-3-pro-image-preview/text-to-image",
        {"enable_base64_output": False, "enable_sync_mode": False, "output_format": "png"},
    ),
    "seedream": ModelSpec("doubao/seedream-4-5-251128/text-to-image"),
    "wan-t2i": ModelSpec("alibaba/wan-2.5/text-to-image", {"seed": -1}),
}

EDIT_MODELS: Dict[str, ModelSpec] = {
    "gemini-edit": ModelSpec(
        "google/gemini-3-pro-image-preview/image-edit",
        {"n": 1, "enable_base64_output": False, "enable_sync_mode": False, "output_format": "png"},
    ),
    "seedream-edit": ModelSpec("doubao/seedream-4-5-251128/image-edit"),
    "wan-edit": ModelSpec("alibaba/wan-2.5/image-edit", {"seed": -1}),
}

VIDEO_MODELS: Dict[str, ModelSpec] = {
    "seedance": ModelSpec(
        "doubao/seedance-1-0-pro-250528/image-to-video",
        {"resolution": "720p", "duration": 5, "aspect_ratio": "9:16", "seed": -1},
        last_frame_key="last_image",
    ),
    "hailuo": ModelSpec(
        "minimax/hailuo-02-standard/image-to-video",
        {"duration": "5"},
        last_frame_key="end_image",
    ),
    "wan": ModelSpec(
        "alibaba/wan-2.2-plus/image-to-video",
        {"resolution": "480p", "duration": 5, "seed": -1},
    ),
    "sora-2-pro": ModelSpec(
        "openai/reverse/sora-2-pro/image-to-video",
        {"model": "sora-2-pro", "orientation": "portrait", "size": "large", "duration": 10},
        duration_options=(10, 15),
    ),
}

DEFAULT_IMAGE_MODEL = "gemini"
DEFAULT_EDIT_MODEL = "gemini-edit"
DEFAULT_VIDEO_MODEL = "sora-2-pro"
DEFAULT_SCRIPT_MODEL = "gemini-3-pro-preview"

VIDEO_MIME_TYPES = {
    ".mp4": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
}


@register_client("gptproto")
class GptProtoClient(BaseGenerationClient):
    """
    GPTProto client.

    Image and video endpoints answer with a task id; results are fetched
    from ``/api/v3/predictions/{id}/result``.
    """

    @property
    def provider_name(self) -> str:
        return "gptproto"

    def _get_default_base_url(self) -> str:
        return "https://gptproto.com"

    def supports_last_frame(self, model: Optional[str]) -> bool:
        spec = VIDEO_MODELS.get(model or DEFAULT_VIDEO_MODEL)
        return bool(spec and spec.last_frame_key)

    # -------------------------------------------------------------------------
    # Generation
    # -------------------------------------------------------------------------

    async def generate(self, request: GenerationRequest) -> GenerationResult:
        """Submit an image or video generation."""
        spec, model = self._resolve_model(request)
        payload = self._build_payload(request, spec)

        logger.info(f"Submitting {request.kind.value} generation with {model}")
        data = await self._post(f"/api/v3/{spec.path}", payload)

        body = data.get("data") if isinstance(data.get("data"), dict) else data
        status = TaskStatus.from_provider_status(body.get("status"))
        if status == TaskStatus.FAILED:
            raise GenerationError(
                self._extract_error(body),
                prompt=request.prompt,
            )

        task_id = self._extract_task_id(data)
        if task_id:
            return GenerationResult(task_handle=task_id, raw=data)

        artifact = self._extract_artifact(body)
        if artifact:
            return GenerationResult(artifact_url=artifact, raw=data)

        raise ProviderError(
            "Response carried neither a task id nor an artifact",
            provider=self.provider_name,
            response_body=str(data),
            recoverable=True,
        )

    async def get_status(self, task_handle: str) -> StatusResult:
        """Fetch the unified task result."""
        client = await self._get_client()
        try:
            response = await client.get(f"{self.base_url}/api/v3/predictions/{task_handle}/result")
        except httpx.HTTPError as e:
            raise ProviderError(
                f"Status request failed: {redact_api_key(str(e))}",
                provider=self.provider_name,
                recoverable=True,
            )

        data = self._decode(response)
        result = data.get("data") if isinstance(data.get("data"), dict) else data
        status = TaskStatus.from_provider_status(result.get("status"))
        logger.debug(f"Task {task_handle} status: {result.get('status')}")

        if status == TaskStatus.SUCCEEDED:
            return StatusResult(status=status, artifact_url=self._extract_artifact(result))
        if status == TaskStatus.FAILED:
            return StatusResult(status=status, error=self._extract_error(result))
        return StatusResult(status=status)

    async def generate_script(
        self,
        prompt: str,
        source_video_url: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """Generate a script with Gemini, attaching the source video when given."""
        parts: List[Dict[str, Any]] = [{"text": prompt}]
        if source_video_url:
            parts.append({
                "file_data": {
                    "mime_type": self.get_mime_type(source_video_url),
                    "file_uri": source_video_url,
                }
            })

        payload = {"contents": [{"role": "user", "parts": parts}]}
        data = await self._post(
            f"/v1beta/models/{model or DEFAULT_SCRIPT_MODEL}:generateContent",
            payload,
            # generateContent takes the bare key
            headers={"Authorization": self.api_key},
        )

        try:
            text = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError):
            text = ""
        if not text:
            raise ProviderError(
                "Script response contained no text",
                provider=self.provider_name,
                response_body=str(data),
                recoverable=True,
            )
        logger.info(f"Script generated, length: {len(text)}")
        return text

    # -------------------------------------------------------------------------
    # Request Building
    # -------------------------------------------------------------------------

    def _resolve_model(self, request: GenerationRequest) -> Tuple[ModelSpec, str]:
        """Look up the model table for the request kind."""
        tables = {
            GenerationKind.TEXT_TO_IMAGE: (IMAGE_MODELS, DEFAULT_IMAGE_MODEL),
            GenerationKind.IMAGE_EDIT: (EDIT_MODELS, DEFAULT_EDIT_MODEL),
            GenerationKind.VIDEO: (VIDEO_MODELS, DEFAULT_VIDEO_MODEL),
        }
        table, default = tables[request.kind]
        model = request.model or default
        if model not in table:
            raise ValidationError(
                f"Unknown {request.kind.value} model: {model}",
                field="model",
                value=model,
                constraint=f"one of {sorted(table)}",
            )
        return table[model], model

    def _build_payload(self, request: GenerationRequest, spec: ModelSpec) -> Dict[str, Any]:
        """Build the JSON body for an image or video submission."""
        payload: Dict[str, Any] = {"prompt": request.prompt}

        if request.kind == GenerationKind.VIDEO:
            payload["image"] = request.first_frame
            payload.update(spec.default_params)
            if request.duration and request.duration in spec.duration_options:
                payload["duration"] = request.duration
            if request.last_frame and spec.last_frame_key:
                payload[spec.last_frame_key] = request.last_frame
        else:
            payload.update(spec.default_params)
            if request.size:
                payload["size"] = request.size
            if request.aspect_ratio:
                payload["aspect_ratio"] = request.aspect_ratio
            if request.kind == GenerationKind.IMAGE_EDIT:
                payload["images"] = list(request.reference_images)

        payload.update(request.extra_params)
        return payload

    async def _post(
        self,
        path: str,
        payload: Dict[str, Any],
        headers: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """POST JSON and decode the response, mapping failures to ProviderError."""
        client = await self._get_client()
        try:
            response = await client.post(f"{self.base_url}{path}", json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(
                f"Request failed: {redact_api_key(str(e))}",
                provider=self.provider_name,
                recoverable=True,
            )
        data = self._decode(response)

        code = data.get("code")
        if isinstance(code, int) and code not in (0, 200):
            raise ProviderError(
                self._extract_error(data),
                provider=self.provider_name,
                response_body=response.text,
                recoverable=True,
            )
        return data

    def _decode(self, response: httpx.Response) -> Dict[str, Any]:
        """Decode a JSON response, raising ProviderError on HTTP errors."""
        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            message = self._extract_error(data) if data else f"Request failed: {response.status_code}"
            raise ProviderError(
                message,
                provider=self.provider_name,
                status_code=response.status_code,
                response_body=response.text,
            )
        if not isinstance(data, dict):
            raise ProviderError(
                "Unexpected response payload",
                provider=self.provider_name,
                response_body=response.text,
                recoverable=True,
            )
        return data

    # -------------------------------------------------------------------------
    # Response Parsing
    # -------------------------------------------------------------------------

    @staticmethod
    def _extract_task_id(data: Dict[str, Any]) -> Optional[str]:
        """Extract the task id from a submission response."""
        inner = data.get("data") if isinstance(data.get("data"), dict) else {}
        task_id = inner.get("id") or data.get("id") or data.get("task_id") or data.get("taskId")
        return str(task_id) if task_id else None

    @staticmethod
    def _extract_artifact(result: Dict[str, Any]) -> Optional[str]:
        """Extract the artifact URL from a result body."""
        outputs = result.get("outputs")
        if isinstance(outputs, list) and outputs:
            return outputs[0]
        output = result.get("output")
        if isinstance(output, dict):
            url = output.get("image_url") or output.get("video_url")
            if url:
                return url
        return result.get("image_url") or result.get("video_url")

    @staticmethod
    def _extract_error(data: Dict[str, Any]) -> str:
        """Extract an error message from a response body."""
        error = data.get("error")
        if isinstance(error, dict):
            error = error.get("message")
        return error or data.get("message") or "Task failed"

    @staticmethod
    def get_mime_type(url: str) -> str:
        """Get the video MIME type from a URL's extension."""
        ext = PurePosixPath(urlparse(url).path).suffix.lower()
        return VIDEO_MIME_TYPES.get(ext, "video/mp4")
