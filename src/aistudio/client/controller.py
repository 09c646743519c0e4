"""Submission controller: retries, cancellation and history reconciliation.

:class:`GenerationController` is what a UI surface talks to.  One call to
:meth:`~GenerationController.submit` is one logical operation made of up to
``policy.max_attempts`` HTTP attempts.  :meth:`~GenerationController.abort`
cancels it whether it is waiting on the network or sleeping between
attempts.  After every outcome except an abort the controller reloads the
recent-history list from the server instead of patching its local copy, so a
record the server created after a client-side failure still shows up.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass

from aistudio.api.models import GenerationResponse
from aistudio.client.api import ApiClient
from aistudio.client.retry import RetryPolicy, run_with_retry
from aistudio.core.errors import Aborted, InvalidInput, ModelOverloaded, Unauthorized

logger = logging.getLogger(__name__)

OVERLOADED_MESSAGE = "Model overloaded. We tried a few times, please try again later."
ABORTED_MESSAGE = "Generation aborted"
UNAUTHORIZED_MESSAGE = "Your session has expired. Please log in again."
GENERIC_MESSAGE = "Failed to generate"


@dataclass
class Draft:
    """Inputs for a submission, e.g. restored from a history entry."""

    prompt: str
    style: str
    image_upload: str


def describe_failure(error: BaseException) -> str:
    """Return the user-facing message for a failed submission."""
    if isinstance(error, Aborted):
        return ABORTED_MESSAGE
    if isinstance(error, ModelOverloaded):
        return OVERLOADED_MESSAGE
    if isinstance(error, Unauthorized):
        return UNAUTHORIZED_MESSAGE
    if isinstance(error, InvalidInput):
        details = "; ".join(
            f"{issue.get('field')}: {issue.get('message')}" for issue in error.issues if issue
        )
        return f"{error.message} ({details})" if details else error.message
    return str(error) or GENERIC_MESSAGE


class GenerationController:
    """Drive generation submissions for one UI surface.

    Args:
        api: Authenticated API client.
        policy: Retry policy; defaults to 3 attempts, 0.4 s base backoff.
        history_limit: Number of entries kept in :attr:`history`.
    """

    def __init__(
        self,
        api: ApiClient,
        policy: RetryPolicy | None = None,
        *,
        history_limit: int = 5,
    ) -> None:
        self.api = api
        self.policy = policy or RetryPolicy()
        self.history_limit = history_limit

        self._history: list[GenerationResponse] = []
        self._loading = False
        self._abort_event: asyncio.Event | None = None
        self._current_call: asyncio.Task | None = None
        self.attempts = 0

    @property
    def loading(self) -> bool:
        """``True`` while a submission is in flight."""
        return self._loading

    @property
    def history(self) -> list[GenerationResponse]:
        """Most recent generations as last reported by the server."""
        return list(self._history)

    # -- Public interface ---------------------------------------------------

    async def submit(
        self,
        prompt: str,
        style: str,
        image_upload: str | None,
        on_retry: Callable[[int], None] | None = None,
    ) -> GenerationResponse:
        """Submit a generation, retrying transient failures.

        Args:
            prompt: Free-text prompt.
            style: Style selection.
            image_upload: ``data:image/...;base64,...`` payload.
            on_retry: Called with the 1-based number of each failed attempt
                that is about to be retried.

        Returns:
            The created generation.

        Raises:
            InvalidInput: Locally when no image was given, or from the server
                on the first attempt (never retried).
            Aborted: :meth:`abort` was called.  No further attempt started.
            RuntimeError: Another submission is already in flight.
            StudioError: The last attempt's error once attempts run out.
        """
        if not image_upload:
            raise InvalidInput(
                "Upload an image first",
                [{"field": "imageUpload", "message": "imageUpload is required"}],
            )
        if self._loading:
            raise RuntimeError("A generation is already in progress")

        self._loading = True
        self._abort_event = asyncio.Event()
        self.attempts = 0
        reconcile = True

        try:
            return await run_with_retry(
                lambda: self._attempt(prompt, style, image_upload),
                self.policy,
                on_retry=on_retry,
                sleep=self._backoff,
            )
        except (Aborted, asyncio.CancelledError):
            reconcile = False
            raise
        except Exception as error:
            logger.warning(f"Generation failed after {self.attempts} attempt(s): {error!r}")
            raise
        finally:
            self._loading = False
            self._current_call = None
            if reconcile:
                await self.refresh_history()

    def abort(self) -> bool:
        """Cancel the in-flight submission.

        Returns:
            ``True`` if a submission was running and has been signalled.
        """
        if not self._loading or self._abort_event is None:
            return False

        self._abort_event.set()
        if self._current_call is not None and not self._current_call.done():
            self._current_call.cancel()
        logger.info("Generation aborted by user")
        return True

    async def refresh_history(self) -> list[GenerationResponse]:
        """Reload :attr:`history` from the server.

        Failures are logged and leave the previous history in place.
        """
        try:
            self._history = await self.api.list_generations(self.history_limit)
        except Exception as error:
            logger.warning(f"Failed to fetch history: {error!r}")
        return self.history

    async def restore(self, item: GenerationResponse) -> Draft:
        """Turn a history entry back into a submittable :class:`Draft`.

        The stored image is downloaded and re-encoded as a data URL, since
        the server only accepts uploads in that form.

        Raises:
            InvalidInput: The entry's image no longer exists.
        """
        if not item.image_url:
            raise InvalidInput(
                "The image for this generation is no longer available",
                [{"field": "imageUpload", "message": "image is missing"}],
            )
        image_upload = await self.api.fetch_image(item.image_url)
        return Draft(prompt=item.prompt, style=item.style, image_upload=image_upload)

    # -- Internals ----------------------------------------------------------

    async def _attempt(self, prompt: str, style: str, image_upload: str) -> GenerationResponse:
        """Make one HTTP attempt that :meth:`abort` can cancel."""
        if self._abort_event.is_set():
            raise Aborted()

        self.attempts += 1
        call = asyncio.ensure_future(self.api.create_generation(prompt, style, image_upload))
        self._current_call = call
        try:
            return await call
        except asyncio.CancelledError:
            if self._abort_event.is_set():
                raise Aborted() from None
            raise
        finally:
            self._current_call = None

    async def _backoff(self, delay: float) -> None:
        """Sleep for *delay* seconds, or raise :class:`Aborted` if aborted first."""
        try:
            await asyncio.wait_for(self._abort_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
        raise Aborted()
