"""Generation backends for the supported model families."""

import asyncio
import base64
import re
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import requests
from loguru import logger

from .models import GenerationRequest, GenerationResponse, ModelFamily
from .saver import DownloadError, decode_data_url
from .ssl_config import build_session


DEFAULT_TIMEOUT = 300.0

_MARKDOWN_IMAGE = re.compile(r"!\[[^\]]*\]\(([^)\s]+)\)")
_BARE_URL = re.compile(r"(https?://\S+|data:image/[^\s)]+)")


class GenerationError(Exception):
    """Raised when a generation call fails."""

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code


class GenerationBackend(ABC):
    """Produces one image for a generation request."""

    family: ModelFamily

    @abstractmethod
    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        """Generate an image; raises on failure."""


class HttpBackend(GenerationBackend):
    """Base class for backends talking to an OpenAI-compatible HTTP API."""

    def __init__(self, base_url: str, api_key: str, *, verify_ssl: bool = True,
                 session: Optional[requests.Session] = None):
        """Initialize HTTP backend."""
        if not base_url or not api_key:
            raise ValueError("API base URL and key are required")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.session = session or build_session(verify_ssl)

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        logger.debug(f"{self.family.value}: generating with {request.model}: {request.prompt[:60]}")
        return await asyncio.to_thread(self._generate, request)

    @abstractmethod
    def _generate(self, request: GenerationRequest) -> GenerationResponse:
        """Blocking implementation run in a worker thread."""

    def _post(self, path: str, request: GenerationRequest, **kwargs) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        headers = {"Authorization": f"Bearer {self.api_key}"}
        timeout = request.timeout_seconds or DEFAULT_TIMEOUT
        try:
            response = self.session.post(url, headers=headers, timeout=timeout, **kwargs)
        except requests.Timeout as e:
            raise GenerationError(f"Request timed out after {timeout}s", code="timeout") from e
        except requests.RequestException as e:
            raise GenerationError(f"Request failed: {e}", code="network") from e

        if not response.ok:
            raise GenerationError(_error_message(response), code=str(response.status_code))
        try:
            return response.json()
        except ValueError as e:
            raise GenerationError("Response is not valid JSON", code="invalid_response") from e

    def _load_image(self, ref: str) -> Tuple[bytes, str]:
        """Bytes and mime type of a source image reference."""
        if ref.startswith("data:"):
            try:
                mime_type, payload = decode_data_url(ref)
            except DownloadError as e:
                raise GenerationError(f"Invalid source image: {e}", code="invalid_source") from e
            return payload, mime_type
        if ref.startswith(("http://", "https://")):
            try:
                response = self.session.get(ref, timeout=DEFAULT_TIMEOUT)
                response.raise_for_status()
            except requests.RequestException as e:
                raise GenerationError(f"Failed to fetch source image: {e}", code="invalid_source") from e
            return response.content, response.headers.get("Content-Type", "image/png")
        path = Path(ref).expanduser()
        if not path.is_file():
            raise GenerationError(f"Source image not found: {ref}", code="invalid_source")
        return path.read_bytes(), "image/png"


class ImagesApiBackend(HttpBackend):
    """Backend for the ``/v1/images`` generation and edit endpoints."""

    def _generate(self, request: GenerationRequest) -> GenerationResponse:
        if request.is_image_to_image:
            payload = self._post("/v1/images/edits", request, data=self._form(request), files=self._files(request))
        else:
            payload = self._post("/v1/images/generations", request, json=self._body(request))
        return GenerationResponse(image_ref=self._extract(payload))

    def _body(self, request: GenerationRequest) -> Dict[str, Any]:
        body: Dict[str, Any] = {"prompt": request.prompt, "model": request.model, "n": request.n}
        if request.size:
            body["size"] = request.size
        if request.quality:
            body["quality"] = request.quality
        if request.aspect_ratio:
            body["aspect_ratio"] = request.aspect_ratio
        return body

    def _form(self, request: GenerationRequest) -> Dict[str, str]:
        return {key: str(value) for key, value in self._body(request).items()}

    def _files(self, request: GenerationRequest) -> List[Tuple[str, Tuple[str, bytes, str]]]:
        files = []
        for index, ref in enumerate(request.source_images):
            content, mime_type = self._load_image(ref)
            files.append(("image", (f"image_{index}.png", content, mime_type)))
        if request.mask:
            content, mime_type = self._load_image(request.mask)
            files.append(("mask", ("mask.png", content, mime_type)))
        return files

    def _first_entry(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        data = payload.get("data") or []
        if not data or not isinstance(data[0], dict):
            raise GenerationError("Response contains no image", code="empty_response")
        return data[0]

    def _extract(self, payload: Dict[str, Any]) -> str:
        entry = self._first_entry(payload)
        if entry.get("url"):
            return entry["url"]
        if entry.get("b64_json"):
            return f"data:image/png;base64,{entry['b64_json']}"
        raise GenerationError("Response contains no image", code="empty_response")


class DalleBackend(ImagesApiBackend):
    """DALL-E style models; results are URLs or base64 payloads."""

    family = ModelFamily.DALLE


class GeminiBackend(ImagesApiBackend):
    """Gemini image models served through the images endpoints; results are base64."""

    family = ModelFamily.GEMINI

    def _extract(self, payload: Dict[str, Any]) -> str:
        entry = self._first_entry(payload)
        if not entry.get("b64_json"):
            raise GenerationError("Response contains no image data", code="empty_response")
        return f"data:image/png;base64,{entry['b64_json']}"


class ChatImageBackend(HttpBackend):
    """Image models exposed through ``/v1/chat/completions``."""

    family = ModelFamily.OPENAI

    def _generate(self, request: GenerationRequest) -> GenerationResponse:
        content: List[Dict[str, Any]] = [{"type": "text", "text": self._prompt(request)}]
        for ref in request.source_images:
            content.append({"type": "image_url", "image_url": {"url": self._image_url(ref)}})

        body = {
            "model": request.model,
            "messages": [{"role": "user", "content": content}],
            "stream": False,
        }
        payload = self._post("/v1/chat/completions", request, json=body)
        return GenerationResponse(image_ref=self._extract(payload))

    def _prompt(self, request: GenerationRequest) -> str:
        if request.aspect_ratio:
            return f"{request.prompt}\nAspect ratio: {request.aspect_ratio}"
        return request.prompt

    def _image_url(self, ref: str) -> str:
        if ref.startswith(("data:", "http://", "https://")):
            return ref
        content, mime_type = self._load_image(ref)
        return f"data:{mime_type};base64,{base64.b64encode(content).decode('ascii')}"

    def _extract(self, payload: Dict[str, Any]) -> str:
        try:
            message = payload["choices"][0]["message"]["content"] or ""
        except (KeyError, IndexError, TypeError) as e:
            raise GenerationError("Response contains no message", code="empty_response") from e

        match = _MARKDOWN_IMAGE.search(message) or _BARE_URL.search(message)
        if not match:
            raise GenerationError(f"No image in response: {message[:200]}", code="empty_response")
        return match.group(1)


_BACKEND_CLASSES = {
    ModelFamily.DALLE: DalleBackend,
    ModelFamily.GEMINI: GeminiBackend,
    ModelFamily.OPENAI: ChatImageBackend,
}


def build_backends(base_url: str, api_key: str, *, verify_ssl: bool = True) -> Dict[ModelFamily, GenerationBackend]:
    """Create one HTTP backend per model family sharing a session."""
    session = build_session(verify_ssl)
    return {
        family: backend_class(base_url, api_key, session=session)
        for family, backend_class in _BACKEND_CLASSES.items()
    }


def _error_message(response: requests.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict) and error.get("message"):
        return f"HTTP {response.status_code}: {error['message']}"
    if isinstance(error, str):
        return f"HTTP {response.status_code}: {error}"
    return f"HTTP {response.status_code}"
