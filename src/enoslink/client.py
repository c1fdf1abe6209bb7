"""EnOS HTTP integration broker client.

Publishes device data (measurepoints, attributes, events) with optional
file attachments, and deletes or downloads files stored by the broker.
The :class:`Connection` class is the main entry point::

    import asyncio
    from pathlib import Path
    from enoslink import Connection, ConnectionConfig, DeviceRef
    from enoslink.builders import MeasurepointPostRequestBuilder

    async def main() -> None:
        config = ConnectionConfig(
            broker_url="https://broker.example.com",
            token_server_url="https://apim.example.com",
            app_key="key",
            app_secret="secret",
            org_id="o15...",
        )
        async with Connection(config) as conn:
            request = (
                MeasurepointPostRequestBuilder()
                .add_measurepoint(DeviceRef(asset_id="A1"), 1000, {"temp": 25})
                .add_measurepoint(DeviceRef(asset_id="A1"), 1000, {"log": Path("a.txt")})
                .build()
            )
            response = await conn.publish(request)
            print(response.code, response.msg)

    asyncio.run(main())

Every operation also has a callback variant (``*_async``) that returns
immediately and reports to ``callback.on_response`` or
``callback.on_failure`` from the event loop.
"""

from __future__ import annotations

import asyncio
import dataclasses
import itertools
import logging
from pathlib import Path
from types import TracebackType

import aiohttp

from enoslink._constants import (
    ACCESS_TOKEN_HEADER,
    CONNECT_TIMEOUT,
    FILES_PATH,
    INTEGRATION_PATH,
    PROTOCOL_VERSION,
    READ_TIMEOUT,
    TOKEN_WAIT_TIMEOUT,
)
from enoslink.auth import TokenManager
from enoslink.config import ConnectionConfig, load_config
from enoslink.download import DownloadResolver
from enoslink.messages import DeviceRef, FileCategory, FileMode, Request, RequestAction, Response
from enoslink.transport import (
    Callback,
    ProgressCallback,
    Transport,
    build_form_data,
    build_publish_parts,
)
from enoslink.upload import FileUploader

logger = logging.getLogger(__name__)


class Connection:
    """A connection to one integration broker on behalf of one application.

    Safe to share between many concurrent tasks: requests run
    independently and only token acquisition is coordinated.

    Args:
        config: Broker, token service and application settings.
        session: Optional :class:`aiohttp.ClientSession` to use instead of
            the one the connection creates (and later closes) itself.
        token_wait_timeout: Seconds a call waits for another call's
            in-flight token fetch.
    """

    def __init__(
        self,
        config: ConnectionConfig,
        *,
        session: aiohttp.ClientSession | None = None,
        token_wait_timeout: float = TOKEN_WAIT_TIMEOUT,
    ) -> None:
        self._config = config
        self._session = session
        self._owns_session = session is None
        self._seq_id = itertools.count(1)
        self._tokens = TokenManager(
            config.token_server_url,
            config.app_key,
            config.app_secret,
            self._get_session,
            wait_timeout=token_wait_timeout,
        )
        self._transport = Transport(self._get_session)
        self._uploader = FileUploader(self._transport, auto_upload=config.auto_upload)
        self._downloads = DownloadResolver(
            self._transport, self._tokens, config.broker_url, config.org_id
        )

    # ------------------------------------------------------------------
    # Construction
    # ------------------------------------------------------------------

    @classmethod
    def from_config(cls, path: Path | None = None) -> Connection:
        """Build a connection from a saved config file.

        Raises :class:`FileNotFoundError` if no config file exists.
        """
        return cls(load_config(path))

    async def __aenter__(self) -> Connection:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.close()

    async def close(self) -> None:
        """Wait for outstanding callback calls, then release the HTTP session."""
        await self._transport.drain()
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def config(self) -> ConnectionConfig:
        return self._config

    @property
    def use_lark(self) -> bool:
        """Whether publishes default to indirect (presigned-URL) file transfer."""
        return self._config.use_lark

    @use_lark.setter
    def use_lark(self, value: bool) -> None:
        self._config.use_lark = value

    @property
    def auto_upload(self) -> bool:
        """Whether files are uploaded to presigned URLs automatically."""
        return self._uploader.auto_upload

    @auto_upload.setter
    def auto_upload(self, value: bool) -> None:
        self._config.auto_upload = value
        self._uploader.auto_upload = value

    # ------------------------------------------------------------------
    # Auth
    # ------------------------------------------------------------------

    async def auth(self) -> None:
        """Obtain or refresh the access token now instead of on first use.

        Raises :class:`~enoslink.errors.AuthError` on failure.
        """
        await self._tokens.ensure_valid()

    # ------------------------------------------------------------------
    # Publish
    # ------------------------------------------------------------------

    async def publish(
        self,
        request: Request,
        *,
        file_mode: FileMode | None = None,
        progress: ProgressCallback | None = None,
    ) -> Response:
        """Publish *request* and return the broker's response.

        Args:
            request: Request built by one of the :mod:`enoslink.builders`.
            file_mode: Override the connection's default file transfer
                mode (see :attr:`use_lark`).
            progress: Optional ``(bytes_written, total)`` callback for the
                outgoing body.

        A response with a non-zero ``code`` is returned, not raised.  In
        indirect mode the presigned uploads run before this returns; their
        failures are logged and never change the result.
        """
        mode = self._resolve_file_mode(file_mode)
        token = await self._tokens.ensure_valid()
        request = self._fill_request(request)
        form = build_form_data(build_publish_parts(request, mode), progress)

        params = {"action": request.action, "orgId": self._config.org_id}
        if mode is FileMode.INDIRECT:
            params["useLark"] = "true"

        logger.debug("Publishing request %s (%s, %s)", request.id, request.method, mode.value)
        response = await self._transport.send_json(
            "POST",
            self._config.broker_url + INTEGRATION_PATH,
            params=params,
            headers={ACCESS_TOKEN_HEADER: token},
            data=form,
        )
        if mode is FileMode.INDIRECT and request.files:
            await self._uploader.complete_indirect_upload(request, response)
        return response

    def publish_async(
        self,
        request: Request,
        callback: Callback[Response],
        *,
        file_mode: FileMode | None = None,
        progress: ProgressCallback | None = None,
    ) -> asyncio.Task[None]:
        """Callback variant of :meth:`publish`; returns the background task."""
        return self._transport.dispatch(
            self.publish(request, file_mode=file_mode, progress=progress), callback
        )

    # ------------------------------------------------------------------
    # Files
    # ------------------------------------------------------------------

    async def delete_file(self, device: DeviceRef, file_uri: str) -> Response:
        """Delete a file stored by the broker for *device*."""
        params = {
            "action": RequestAction.DELETE,
            "orgId": self._config.org_id,
            "fileUri": file_uri,
            **device.to_params(),
        }
        token = await self._tokens.ensure_valid()
        return await self._transport.send_json(
            "POST",
            self._config.broker_url + FILES_PATH,
            params=params,
            headers={ACCESS_TOKEN_HEADER: token},
            data=b"",
        )

    def delete_file_async(
        self, device: DeviceRef, file_uri: str, callback: Callback[Response]
    ) -> asyncio.Task[None]:
        """Callback variant of :meth:`delete_file`; returns the background task."""
        return self._transport.dispatch(self.delete_file(device, file_uri), callback)

    async def download_file(
        self, device: DeviceRef, file_uri: str, category: FileCategory = FileCategory.FEATURE
    ) -> bytes:
        """Download the contents of *file_uri*.

        ``enos-lark://`` URIs are resolved through a presigned URL first.
        """
        return await self._downloads.download(device, file_uri, category)

    def download_file_async(
        self,
        device: DeviceRef,
        file_uri: str,
        callback: Callback[bytes],
        category: FileCategory = FileCategory.FEATURE,
    ) -> asyncio.Task[None]:
        """Callback variant of :meth:`download_file`; returns the background task."""
        return self._downloads.download_async(device, file_uri, category, callback)

    async def get_download_url(
        self, device: DeviceRef, file_uri: str, category: FileCategory = FileCategory.FEATURE
    ) -> str:
        """Return a presigned download URL for an ``enos-lark://`` file."""
        return await self._downloads.get_download_url(device, file_uri, category)

    # ------------------------------------------------------------------
    # Private
    # ------------------------------------------------------------------

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(
                    total=None, connect=CONNECT_TIMEOUT, sock_read=READ_TIMEOUT
                )
            )
            self._owns_session = True
        return self._session

    def _resolve_file_mode(self, file_mode: FileMode | None) -> FileMode:
        if file_mode is not None:
            return file_mode
        return FileMode.INDIRECT if self._config.use_lark else FileMode.DIRECT

    def _fill_request(self, request: Request) -> Request:
        """Return a copy of *request* with ``id`` and ``version`` populated."""
        request_id = request.id or str(next(self._seq_id))
        return dataclasses.replace(request, id=request_id, version=PROTOCOL_VERSION)
