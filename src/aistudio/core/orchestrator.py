"""Generation submission pipeline.

:class:`GenerationService` turns an authenticated submission into a stored
image plus a generation record, treating the two as one unit of work::

    Received -> Validating -> Delaying -> Persisting -> Recording -> Succeeded
                    |             |            |             |
                InvalidInput  ModelOverloaded  |       InternalError
                                          InvalidPayload   (image deleted)
                                          ProcessingError

No step after a file has been written may return an error while that file
is still on disk.  A submission cancelled mid-write deletes its file once
the write completes.  There is no model behind the service: the delay and the
overload fault simulate one.
"""

from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import datetime

from aistudio.core.config import StudioConfig
from aistudio.core.errors import InternalError, InvalidInput, ModelOverloaded, StudioError
from aistudio.core.events import Stopwatch, log_event, new_request_id
from aistudio.core.generations_db import GenerationsDB, GenerationStatus, clamp_limit
from aistudio.core.image_store import ImageStore, reference_to_url

logger = logging.getLogger(__name__)


@dataclass
class GenerationResult:
    """A generation as returned to API callers."""

    id: int
    prompt: str
    style: str
    image_url: str | None
    created_at: datetime
    status: str


@dataclass
class SimulationSettings:
    """Knobs of the simulated model."""

    delay_min_ms: int = 1000
    delay_max_ms: int = 2000
    overload_probability: float = 0.2

    @classmethod
    def from_config(cls, config: StudioConfig) -> "SimulationSettings":
        return cls(
            delay_min_ms=config.delay_min_ms,
            delay_max_ms=config.delay_max_ms,
            overload_probability=config.overload_probability,
        )


class GenerationService:
    """Coordinate image persistence and record insertion for submissions.

    Args:
        images: Image store the uploads are written to.
        records: Open generation store.
        simulation: Delay and fault-injection settings.
        url_prefix: Prefix under which image references are exposed.
        rng: Random source for the delay and fault; injectable for tests.
        sleep: Awaitable sleep; injectable for tests.
        history_default_limit: Page size when the caller passes none.
        history_max_limit: Upper bound for page sizes.
    """

    def __init__(
        self,
        images: ImageStore,
        records: GenerationsDB,
        simulation: SimulationSettings | None = None,
        *,
        url_prefix: str = "/uploads",
        rng: random.Random | None = None,
        sleep=asyncio.sleep,
        history_default_limit: int = 5,
        history_max_limit: int = 50,
    ) -> None:
        self.images = images
        self.records = records
        self.simulation = simulation or SimulationSettings()
        self.url_prefix = url_prefix
        self._rng = rng or random.Random()
        self._sleep = sleep
        self.history_default_limit = history_default_limit
        self.history_max_limit = history_max_limit

    def image_url(self, image_ref: str | None) -> str | None:
        """Expose a reference to clients, or ``None`` if there is none."""
        return reference_to_url(image_ref, self.url_prefix) if image_ref else None

    # -- Write path ---------------------------------------------------------

    async def submit(
        self,
        user_id: int,
        prompt: str,
        style: str,
        image_upload: str,
        *,
        request_id: str | None = None,
    ) -> GenerationResult:
        """Run one submission through the pipeline.

        Args:
            user_id: Authenticated submitter.
            prompt: Free-text prompt.
            style: Style selection.
            image_upload: ``data:image/...;base64,...`` payload.
            request_id: Correlation id for log events.

        Returns:
            The stored generation.

        Raises:
            InvalidInput: Missing prompt, style or payload, or malformed payload.
            ModelOverloaded: Simulated capacity fault.  Nothing was stored.
            ProcessingError: The image could not be written.
            InternalError: The record could not be inserted.  The image
                written for it has been deleted.
        """
        request_id = request_id or new_request_id()
        timer = Stopwatch()
        log_event(logger, logging.INFO, "generation.received", request_id=request_id, user_id=user_id)

        try:
            self._validate(prompt, style, image_upload)
            await self._simulate_latency()
            self._inject_fault()

            image_ref = await self._persist(request_id, user_id, image_upload)
            log_event(
                logger,
                logging.DEBUG,
                "generation.persisted",
                request_id=request_id,
                user_id=user_id,
                image_ref=image_ref,
            )

            gen_id, created_at = self._record(request_id, user_id, prompt, style, image_ref)

        except ModelOverloaded:
            log_event(
                logger,
                logging.WARNING,
                "generation.overloaded",
                request_id=request_id,
                user_id=user_id,
                latency_ms=timer.elapsed_ms,
                outcome="overloaded",
            )
            raise
        except StudioError as e:
            log_event(
                logger,
                logging.WARNING,
                "generation.failed",
                request_id=request_id,
                user_id=user_id,
                latency_ms=timer.elapsed_ms,
                outcome=type(e).__name__,
            )
            raise
        except Exception as e:
            log_event(
                logger,
                logging.ERROR,
                "generation.failed",
                request_id=request_id,
                user_id=user_id,
                latency_ms=timer.elapsed_ms,
                outcome=type(e).__name__,
            )
            raise

        log_event(
            logger,
            logging.INFO,
            "generation.succeeded",
            request_id=request_id,
            user_id=user_id,
            generation_id=gen_id,
            latency_ms=timer.elapsed_ms,
            outcome="succeeded",
        )
        return GenerationResult(
            id=gen_id,
            prompt=prompt,
            style=style,
            image_url=self.image_url(image_ref),
            created_at=created_at,
            status=GenerationStatus.SUCCEEDED.value,
        )

    def _validate(self, prompt: str, style: str, image_upload: str) -> None:
        issues = [
            {"field": name, "message": f"{name} is required"}
            for name, value in (("prompt", prompt), ("style", style), ("imageUpload", image_upload))
            if not value or not value.strip()
        ]
        if issues:
            raise InvalidInput("Invalid input", issues)

    async def _simulate_latency(self) -> None:
        low = self.simulation.delay_min_ms
        high = self.simulation.delay_max_ms
        if high <= 0:
            return
        delay_ms = low + self._rng.random() * (high - low)
        await self._sleep(delay_ms / 1000)

    def _inject_fault(self) -> None:
        if self._rng.random() < self.simulation.overload_probability:
            raise ModelOverloaded()

    async def _persist(self, request_id: str, user_id: int, image_upload: str) -> str:
        """Write the image in a worker thread.

        If the caller is cancelled while the thread is still writing, the
        file it produces is deleted as soon as the write completes.
        """
        write = asyncio.ensure_future(asyncio.to_thread(self.images.persist, image_upload, user_id))
        try:
            return await asyncio.shield(write)
        except asyncio.CancelledError:
            write.add_done_callback(lambda done: self._discard(done, request_id, user_id))
            raise

    def _discard(self, write: asyncio.Future, request_id: str, user_id: int) -> None:
        """Remove the image written by an abandoned submission."""
        if write.cancelled() or write.exception() is not None:
            return
        image_ref = write.result()
        removed = self.images.delete(image_ref)
        log_event(
            logger,
            logging.WARNING,
            "generation.cleanup",
            request_id=request_id,
            user_id=user_id,
            image_ref=image_ref,
            removed=removed,
            cause="CancelledError",
        )

    def _record(
        self, request_id: str, user_id: int, prompt: str, style: str, image_ref: str
    ) -> tuple[int, datetime]:
        """Insert the record, deleting *image_ref* if the insert fails."""
        try:
            return self.records.insert(user_id, prompt, style, image_ref, GenerationStatus.SUCCEEDED)
        except Exception as e:
            removed = self.images.delete(image_ref)
            log_event(
                logger,
                logging.ERROR,
                "generation.cleanup",
                request_id=request_id,
                user_id=user_id,
                image_ref=image_ref,
                removed=removed,
                cause=type(e).__name__,
            )
            raise InternalError() from e

    # -- Read path ----------------------------------------------------------

    def list_recent(self, user_id: int, limit: int | None = None) -> list[GenerationResult]:
        """Return a user's recent generations, newest first.

        Entries whose image file no longer exists are returned with
        ``image_url=None``.
        """
        limit = clamp_limit(limit, self.history_default_limit, self.history_max_limit)
        results = []
        for record in self.records.list_recent(user_id, limit):
            image_ref = record.image_ref
            if image_ref and not self.images.exists(image_ref):
                logger.warning(f"Generation {record.id} references missing image {image_ref}")
                image_ref = None

            results.append(
                GenerationResult(
                    id=record.id,
                    prompt=record.prompt,
                    style=record.style,
                    image_url=self.image_url(image_ref),
                    created_at=record.created_at,
                    status=record.status.value,
                )
            )
        return results
