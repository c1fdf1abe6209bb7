"""HTTP execution against the broker on top of a shared aiohttp session.

:class:`Transport` turns aiohttp outcomes into the typed errors of
:mod:`enoslink.errors`:

* non-2xx status → :class:`~enoslink.errors.ServerError`
* connection failures and timeouts → :class:`~enoslink.errors.TransportError`
* malformed bodies → :class:`~enoslink.errors.DecodeError`

Nothing here retries.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, TypeVar

import aiohttp

from enoslink._constants import MESSAGE_PART, PROGRESS_CHUNK_SIZE
from enoslink.errors import ClientError, DecodeError, EncodingError, ServerError, TransportError
from enoslink.messages import FileMode, Request, Response

logger = logging.getLogger(__name__)

T = TypeVar("T")
T_contra = TypeVar("T_contra", contravariant=True)

ProgressCallback = Callable[[int, int], None]
"""Called with ``(bytes_written, total_bytes)`` while a body is sent."""


class Callback(Protocol[T_contra]):
    """Receiver for the outcome of a callback-style call.

    Exactly one of the two methods is invoked per call.
    """

    def on_response(self, result: T_contra) -> None: ...

    def on_failure(self, failure: Exception) -> None: ...


@dataclass(frozen=True)
class FormPart:
    """One section of a multipart publish body."""

    name: str
    content: bytes
    filename: str | None = None
    content_type: str = "application/octet-stream"


def build_publish_parts(request: Request, file_mode: FileMode) -> list[FormPart]:
    """Lay out the multipart sections for publishing *request*.

    The JSON envelope always comes first.  In direct mode each manifest
    entry follows as its own section; in indirect mode no file bytes are
    included.
    """
    parts = [FormPart(MESSAGE_PART, request.encode(), content_type="application/json")]
    if file_mode is FileMode.DIRECT:
        for entry in request.files:
            try:
                data = entry.source.read_bytes()
            except OSError as e:
                raise EncodingError(f"Cannot read attachment {entry.source}: {e}") from e
            parts.append(FormPart(entry.local_name, data, filename=entry.local_name))
    return parts


class _ProgressTracker:
    def __init__(self, total: int, callback: ProgressCallback) -> None:
        self.total = total
        self.written = 0
        self._callback = callback

    def advance(self, n: int) -> None:
        self.written += n
        self._callback(self.written, self.total)


async def _iter_chunks(data: bytes, tracker: _ProgressTracker) -> AsyncIterator[bytes]:
    for start in range(0, len(data), PROGRESS_CHUNK_SIZE):
        chunk = data[start : start + PROGRESS_CHUNK_SIZE]
        yield chunk
        tracker.advance(len(chunk))


def build_form_data(
    parts: list[FormPart], progress: ProgressCallback | None = None
) -> aiohttp.FormData:
    """Convert *parts* into an :class:`aiohttp.FormData` body.

    When *progress* is given every section is streamed in chunks and the
    callback sees the running byte count after each chunk is handed to the
    connection.
    """
    form = aiohttp.FormData()
    tracker = None
    if progress is not None:
        tracker = _ProgressTracker(sum(len(p.content) for p in parts), progress)
    for part in parts:
        value: Any
        if tracker is not None:
            value = _iter_chunks(part.content, tracker)
        elif part.filename is None:
            value = part.content.decode("utf-8")
        else:
            value = part.content
        form.add_field(
            part.name, value, filename=part.filename, content_type=part.content_type
        )
    return form


class Transport:
    """Executes requests through the session returned by *session*."""

    def __init__(self, session: Callable[[], aiohttp.ClientSession]) -> None:
        self._session = session
        self._pending: set[asyncio.Task[None]] = set()

    async def send_json(
        self,
        method: str,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        data: Any = None,
    ) -> Response:
        """Send a request and decode the JSON response envelope."""
        logger.debug("%s %s params=%s", method, url, params)
        with _map_errors(url):
            async with self._session().request(
                method, url, params=params, headers=headers, data=data
            ) as resp:
                _check_status(resp)
                body = await resp.json(content_type=None)
            return Response.from_dict(body)

    async def fetch_bytes(
        self,
        url: str,
        *,
        params: Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
    ) -> bytes:
        """GET *url* and return the raw body."""
        logger.debug("GET %s params=%s", url, params)
        with _map_errors(url):
            async with self._session().get(url, params=params, headers=headers) as resp:
                _check_status(resp)
                return await resp.read()

    async def put_raw(self, url: str, data: bytes, headers: Mapping[str, str]) -> None:
        """PUT *data* to *url* as-is (used for presigned uploads)."""
        logger.debug("PUT %s (%d bytes)", url, len(data))
        with _map_errors(url):
            async with self._session().put(url, data=data, headers=dict(headers)) as resp:
                _check_status(resp)

    def dispatch(self, work: Awaitable[T], callback: Callback[T]) -> asyncio.Task[None]:
        """Run *work* in the background and report its outcome to *callback*.

        Must be called from a running event loop.  The callback runs on the
        loop, inside the background task.
        """
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            if asyncio.iscoroutine(work):
                work.close()
            raise

        async def run() -> None:
            try:
                result = await work
            except Exception as e:
                callback.on_failure(e)
                return
            callback.on_response(result)

        task = loop.create_task(run())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        """Wait for every dispatched call to finish."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _check_status(resp: aiohttp.ClientResponse) -> None:
    if not 200 <= resp.status < 300:
        raise ServerError(resp.status, resp.reason or "")


@contextlib.contextmanager
def _map_errors(url: str) -> Iterator[None]:
    try:
        yield
    except ClientError:
        raise
    except (aiohttp.ClientConnectionError, TimeoutError) as e:
        logger.info("Failed to execute request to %s due to socket error: %s", url, e)
        raise TransportError(str(e) or type(e).__name__) from e
    except (aiohttp.ClientPayloadError, aiohttp.ContentTypeError) as e:
        raise DecodeError(f"Failed to read response from {url}: {e}") from e
    except aiohttp.ClientError as e:
        logger.warning("Failed to execute request to %s: %s", url, e)
        raise ClientError(f"Request to {url} failed: {e}") from e
    except ValueError as e:
        raise DecodeError(f"Failed to decode response from {url}: {e}") from e
