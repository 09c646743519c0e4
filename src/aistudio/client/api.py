"""Async HTTP client for the AI Studio REST API.

:class:`ApiClient` wraps :class:`httpx.AsyncClient`, attaches the bearer
token and turns every non-2xx response into the matching
:mod:`aistudio.core.errors` exception, so callers handle server failures
with the same classes the server raised::

    async with ApiClient("http://localhost:4000") as api:
        await api.login("me@example.com", "secret123")
        try:
            item = await api.create_generation("a lighthouse", "Classic", to_data_url(path))
        except ModelOverloaded:
            ...
"""

from __future__ import annotations

import base64
import logging
import mimetypes
from pathlib import Path
from typing import Any

import httpx

from aistudio.api.models import GenerationResponse, UserResponse
from aistudio.core.errors import InvalidInput, StudioError, error_for_status

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "http://localhost:4000"


def to_data_url(path: Path | str) -> str:
    """Read an image file into a ``data:<mime>;base64,`` URL.

    Raises:
        ValueError: If the file type is not an image.
    """
    path = Path(path)
    mime, _ = mimetypes.guess_type(path.name)
    if not mime or not mime.startswith("image/"):
        raise ValueError(f"{path.name} is not an image file")
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def error_from_response(response: httpx.Response) -> StudioError:
    """Build the exception describing a failed response.

    The exception class is chosen by status code; ``status_code`` on the
    instance is the real status and ``body`` the decoded JSON (or ``{}``).
    """
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    message = body.get("message") or response.reason_phrase or "Request failed"
    error_class = error_for_status(response.status_code)
    if issubclass(error_class, InvalidInput):
        error = error_class(message, body.get("issues"))
    else:
        error = error_class(message)

    error.status_code = response.status_code
    error.body = body
    return error


class ApiClient:
    """Thin async client holding the base URL and bearer token.

    Args:
        base_url: Server root, e.g. ``"http://localhost:4000"``.
        token: Bearer token from a previous login, if any.
        timeout: Per-request timeout in seconds.
        transport: Optional httpx transport (``httpx.ASGITransport`` or
            ``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        token: str | None = None,
        *,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.token = token
        self._client = httpx.AsyncClient(base_url=base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "ApiClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        params: dict | None = None,
    ) -> Any:
        """Send a request and return the decoded JSON body.

        Raises:
            StudioError: Subclass matching the response status for non-2xx.
            httpx.TransportError: On network failures.
        """
        response = await self._send(method, path, json=json, params=params)
        if not response.content:
            return None
        return response.json()

    async def _send(self, method: str, path: str, **kwargs) -> httpx.Response:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        response = await self._client.request(method, path, headers=headers, **kwargs)
        if response.is_error:
            error = error_from_response(response)
            logger.debug(f"{method} {path} failed with {response.status_code}: {error.message}")
            raise error
        return response

    # -- Auth ---------------------------------------------------------------

    async def signup(self, email: str, password: str) -> str:
        data = await self.request("POST", "/auth/signup", json={"email": email, "password": password})
        self.token = data["token"]
        return self.token

    async def login(self, email: str, password: str) -> str:
        data = await self.request("POST", "/auth/login", json={"email": email, "password": password})
        self.token = data["token"]
        return self.token

    async def logout(self) -> None:
        """Revoke the current token on the server and forget it."""
        if self.token:
            await self.request("POST", "/auth/logout")
        self.token = None

    async def me(self) -> UserResponse:
        return UserResponse.model_validate(await self.request("GET", "/auth/me"))

    # -- Generations --------------------------------------------------------

    async def create_generation(self, prompt: str, style: str, image_upload: str) -> GenerationResponse:
        data = await self.request(
            "POST",
            "/generations",
            json={"prompt": prompt, "style": style, "imageUpload": image_upload},
        )
        return GenerationResponse.model_validate(data)

    async def list_generations(self, limit: int = 5) -> list[GenerationResponse]:
        data = await self.request("GET", "/generations", params={"limit": limit})
        return [GenerationResponse.model_validate(item) for item in data or []]

    async def fetch_image(self, image_url: str) -> str:
        """Download a stored image as a ``data:`` URL that can be submitted again.

        Raises:
            StudioError: If the server refuses the download (401, 404, ...).
            ValueError: If the response is not an image.
        """
        response = await self._send("GET", image_url)
        mime = response.headers.get("content-type", "").split(";")[0].strip().lower()
        if not mime.startswith("image/"):
            mime = mimetypes.guess_type(image_url)[0] or ""
        if not mime.startswith("image/") or not response.content:
            raise ValueError(f"{image_url} did not return an image")
        return f"data:{mime};base64,{base64.b64encode(response.content).decode('ascii')}"
