"""AI Studio — FastAPI Application.

This module defines :func:`create_app`, the composition root that wires the
configuration, the SQLite stores, the image store and the generation
service together, plus the module-level ``app`` used by uvicorn and the
``main()`` CLI function.

Architecture
------------
- **Stores** (:class:`CredentialStore`, :class:`GenerationsDB`) are opened
  in the lifespan handler and closed on shutdown.  They live on
  ``app.state``; nothing holds a module-level database handle.
- **Validation** happens once, at the boundary, through the Pydantic models
  in :mod:`aistudio.api.models`.  Failures become ``400`` responses with a
  list of field-level ``issues``.
- **Errors** raised by the core are :class:`~aistudio.core.errors.StudioError`
  subclasses that carry their own HTTP status; one exception handler turns
  them into ``{"message": ...}`` bodies.
- **Images** are served under ``config.uploads_url_prefix``.  When
  ``uploads_require_auth`` is set, only the owning user may read them.

Endpoints
---------
========  ==============================  ==================================
Method    Path                            Purpose
========  ==============================  ==================================
GET       ``/``                           Health check
POST      ``/auth/signup``                Create an account, return a token
POST      ``/auth/login``                 Exchange credentials for a token
GET       ``/auth/me``                    Current user
POST      ``/auth/logout``                Revoke the presented token
POST      ``/generations``                Submit a generation
GET       ``/generations``                Recent generations (``limit``)
GET       ``/uploads/{user_id}/{name}``   Stored image
========  ==============================  ==================================

Usage
-----
CLI (installed entry point)::

    aistudio

Direct invocation::

    python -m aistudio.api.main
"""

from __future__ import annotations

import logging
import random
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import timedelta

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse
from fastapi.staticfiles import StaticFiles
from starlette.exceptions import HTTPException as StarletteHTTPException

from aistudio import __version__
from aistudio.api.models import (
    ErrorResponse,
    GenerationCreate,
    GenerationResponse,
    LoginRequest,
    SignupRequest,
    TokenResponse,
    UserResponse,
)
from aistudio.core.config import StudioConfig, config as default_config
from aistudio.core.credentials import CredentialStore
from aistudio.core.errors import StudioError, Unauthorized
from aistudio.core.events import Stopwatch, configure_logging, log_event, new_request_id
from aistudio.core.generations_db import GenerationsDB
from aistudio.core.image_store import ImageStore, make_reference
from aistudio.core.orchestrator import GenerationService, SimulationSettings

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


def _error_responses(*status_codes: int) -> dict:
    """OpenAPI ``responses`` entries documenting the JSON error body."""
    return {code: {"model": ErrorResponse} for code in status_codes}


# ---------------------------------------------------------------------------
# Request helpers and dependencies.
# ---------------------------------------------------------------------------


def _bearer_token(authorization: str | None) -> str | None:
    """Extract the token from an ``Authorization: Bearer <token>`` header."""
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


def current_user_id(request: Request, authorization: str | None = Header(default=None)) -> int:
    """FastAPI dependency resolving the bearer token to a user id.

    Raises:
        Unauthorized: If the header is missing or the token is invalid.
    """
    credentials: CredentialStore = request.app.state.credentials
    return credentials.authenticate(_bearer_token(authorization))


def _validation_issues(exc: RequestValidationError) -> list[dict]:
    """Flatten Pydantic errors into ``{"field", "message"}`` issues."""
    issues = []
    for error in exc.errors():
        loc = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        issues.append({"field": ".".join(loc) or "body", "message": error.get("msg", "")})
    return issues


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    config: StudioConfig | None = None,
    *,
    rng: random.Random | None = None,
    sleep=None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        config: Settings to use; defaults to the global ``config``.
        rng: Random source for the simulated latency and overload fault.
        sleep: Awaitable sleep used for the simulated latency.

    Returns:
        A configured :class:`FastAPI` instance.  Its stores are opened when
        the lifespan starts (e.g. when a ``TestClient`` is entered).
    """
    cfg = config or default_config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Open the stores on startup and close them on shutdown."""
        credentials = CredentialStore(
            cfg.database_path, token_ttl=timedelta(hours=cfg.token_ttl_hours)
        ).open()
        records = GenerationsDB(cfg.database_path).open()
        images = ImageStore(
            cfg.uploads_dir,
            max_width=cfg.max_image_width,
            jpeg_quality=cfg.jpeg_quality,
            max_bytes=cfg.max_upload_bytes,
        )

        service_kwargs = {}
        if sleep is not None:
            service_kwargs["sleep"] = sleep

        app.state.credentials = credentials
        app.state.records = records
        app.state.images = images
        app.state.generations = GenerationService(
            images,
            records,
            SimulationSettings.from_config(cfg),
            url_prefix=cfg.uploads_url_prefix,
            rng=rng,
            history_default_limit=cfg.history_default_limit,
            history_max_limit=cfg.history_max_limit,
            **service_kwargs,
        )
        logger.info("Stores opened.")

        try:
            yield
        finally:
            records.close()
            credentials.close()
            logger.info("Stores closed on shutdown.")

    app = FastAPI(
        title="AI Studio",
        description="Prompt + image generation API with simulated model latency.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = cfg

    app.add_middleware(
        CORSMiddleware,
        allow_origins=cfg.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # -----------------------------------------------------------------------
    # Middleware and exception handlers.
    # -----------------------------------------------------------------------

    @app.middleware("http")
    async def request_context(request: Request, call_next):
        """Assign a request id and log method, path, status and latency."""
        request_id = request.headers.get(REQUEST_ID_HEADER) or new_request_id()
        request.state.request_id = request_id
        timer = Stopwatch()

        response = await call_next(request)

        response.headers[REQUEST_ID_HEADER] = request_id
        log_event(
            logger,
            logging.INFO,
            "http.request",
            request_id=request_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=timer.elapsed_ms,
        )
        return response

    @app.exception_handler(StudioError)
    async def studio_error_handler(request: Request, exc: StudioError) -> JSONResponse:
        return JSONResponse(status_code=exc.status_code, content=exc.to_body())

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            status_code=400,
            content={"message": "Invalid input", "issues": _validation_issues(exc)},
        )

    @app.exception_handler(StarletteHTTPException)
    async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
        return JSONResponse(
            status_code=exc.status_code,
            content={"message": str(exc.detail)},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"message": "Server error"})

    # -----------------------------------------------------------------------
    # Routes.
    # -----------------------------------------------------------------------

    @app.get("/")
    async def health() -> dict:
        """Liveness check."""
        return {"ok": True}

    @app.post("/auth/signup", response_model=TokenResponse, responses=_error_responses(400, 409))
    def signup(req: SignupRequest, request: Request) -> TokenResponse:
        """Create an account and return a bearer token.

        Raises:
            Conflict: 409 if the email is already registered.
        """
        credentials: CredentialStore = request.app.state.credentials
        user = credentials.create_user(req.email, req.password)
        return TokenResponse(token=credentials.issue_token(user.id))

    @app.post("/auth/login", response_model=TokenResponse, responses=_error_responses(400, 401))
    def login(req: LoginRequest, request: Request) -> TokenResponse:
        """Exchange email and password for a bearer token.

        Raises:
            Unauthorized: 401 on unknown email or wrong password.
        """
        credentials: CredentialStore = request.app.state.credentials
        user = credentials.verify_user(req.email, req.password)
        return TokenResponse(token=credentials.issue_token(user.id))

    @app.get("/auth/me", response_model=UserResponse, responses=_error_responses(401))
    def me(request: Request, user_id: int = Depends(current_user_id)) -> UserResponse:
        """Return the authenticated user."""
        user = request.app.state.credentials.get_user(user_id)
        if user is None:
            raise Unauthorized()
        return UserResponse(id=user.id, email=user.email)

    @app.post("/auth/logout", status_code=204, responses=_error_responses(401))
    def logout(
        request: Request,
        authorization: str | None = Header(default=None),
        user_id: int = Depends(current_user_id),
    ) -> None:
        """Revoke the bearer token used for this request."""
        request.app.state.credentials.revoke_token(_bearer_token(authorization))

    @app.post(
        "/generations",
        response_model=GenerationResponse,
        status_code=201,
        responses=_error_responses(400, 401, 500, 503),
    )
    async def create_generation(
        req: GenerationCreate,
        request: Request,
        user_id: int = Depends(current_user_id),
    ) -> GenerationResponse:
        """Submit a generation.

        Sleeps for the simulated model latency, may fail with ``503`` to
        simulate overload, then stores the image and the record.

        Returns:
            The created generation (``201``).

        Raises:
            InvalidInput: 400 for missing fields or a malformed image.
            ModelOverloaded: 503, nothing stored.
            ProcessingError / InternalError: 500, nothing left on disk.
        """
        service: GenerationService = request.app.state.generations
        result = await service.submit(
            user_id,
            req.prompt,
            req.style,
            req.image_upload,
            request_id=request.state.request_id,
        )
        return GenerationResponse.from_result(result)

    @app.get(
        "/generations",
        response_model=list[GenerationResponse],
        responses=_error_responses(400, 401),
    )
    def list_generations(
        request: Request,
        limit: int | None = Query(default=None),
        user_id: int = Depends(current_user_id),
    ) -> list[GenerationResponse]:
        """Return the caller's recent generations, newest first.

        ``limit`` defaults to 5 and is clamped to ``[1, 50]``.  Entries whose
        image is gone from disk report ``imageUrl: null``.
        """
        service: GenerationService = request.app.state.generations
        return [GenerationResponse.from_result(r) for r in service.list_recent(user_id, limit)]

    prefix = cfg.uploads_url_prefix.rstrip("/")
    if cfg.uploads_require_auth:

        @app.get(prefix + "/{owner_id}/{filename}", responses=_error_responses(401, 404))
        def get_upload(
            owner_id: int,
            filename: str,
            request: Request,
            user_id: int = Depends(current_user_id),
        ) -> FileResponse:
            """Serve a stored image to its owner.

            Raises:
                HTTPException: 404 when the image does not exist or belongs
                    to another user.
            """
            if owner_id != user_id:
                raise HTTPException(status_code=404, detail="Image not found")

            images: ImageStore = request.app.state.images
            try:
                path = images.resolve(make_reference(owner_id, filename))
            except ValueError:
                raise HTTPException(status_code=404, detail="Image not found") from None
            if not path.is_file():
                raise HTTPException(status_code=404, detail="Image not found")
            return FileResponse(path)

    else:
        app.mount(prefix, StaticFiles(directory=str(cfg.uploads_dir)), name="uploads")

    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host and port from :data:`~aistudio.core.config.config`
    (``AISTUDIO_SERVER_HOST`` / ``AISTUDIO_SERVER_PORT``).  Defaults to
    ``0.0.0.0:4000``.
    """
    import uvicorn

    configure_logging(default_config.log_level)
    uvicorn.run(
        "aistudio.api.main:app",
        host=default_config.server_host,
        port=default_config.server_port,
        reload=False,
    )


if __name__ == "__main__":
    main()
