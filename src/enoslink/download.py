"""File download, including the two-hop path for presigned (lark) storage."""

from __future__ import annotations

import asyncio
import logging

from enoslink._constants import ACCESS_TOKEN_HEADER, FILES_PATH, LARK_URI_SCHEME
from enoslink.auth import TokenManager
from enoslink.errors import BrokerError, DecodeError
from enoslink.messages import DeviceRef, FileCategory, RequestAction
from enoslink.transport import Callback, Transport

logger = logging.getLogger(__name__)


class DownloadResolver:
    """Resolves a broker file URI to its bytes.

    URIs in the ``enos-lark://`` scheme are stored behind presigned URLs:
    the resolver first asks the broker for a download URL, then fetches
    that URL without the broker's auth header.  Any other URI is streamed
    straight from the broker's download endpoint.
    """

    def __init__(
        self, transport: Transport, tokens: TokenManager, broker_url: str, org_id: str
    ) -> None:
        self._transport = transport
        self._tokens = tokens
        self._files_url = broker_url.rstrip("/") + FILES_PATH
        self._org_id = org_id

    async def download(
        self, device: DeviceRef, file_uri: str, category: FileCategory = FileCategory.FEATURE
    ) -> bytes:
        if file_uri.startswith(LARK_URI_SCHEME):
            url = await self.get_download_url(device, file_uri, category)
            logger.debug("Fetching %s from presigned URL", file_uri)
            return await self._transport.fetch_bytes(url)

        params = self._params(RequestAction.DOWNLOAD, device, file_uri, category)
        token = await self._tokens.ensure_valid()
        return await self._transport.fetch_bytes(
            self._files_url,
            params=params,
            headers={ACCESS_TOKEN_HEADER: token},
        )

    def download_async(
        self,
        device: DeviceRef,
        file_uri: str,
        category: FileCategory,
        callback: Callback[bytes],
    ) -> asyncio.Task[None]:
        """Callback variant of :meth:`download`; returns the background task."""
        return self._transport.dispatch(self.download(device, file_uri, category), callback)

    async def get_download_url(
        self, device: DeviceRef, file_uri: str, category: FileCategory = FileCategory.FEATURE
    ) -> str:
        """Ask the broker for a presigned URL of *file_uri*.

        Raises :class:`BrokerError` if the broker reports a non-zero code.
        """
        params = self._params(RequestAction.GET_DOWNLOAD_URL, device, file_uri, category)
        token = await self._tokens.ensure_valid()
        response = await self._transport.send_json(
            "GET",
            self._files_url,
            params=params,
            headers={ACCESS_TOKEN_HEADER: token},
        )
        if not response.is_success:
            raise BrokerError(response.code, response.msg)
        if not isinstance(response.data, str) or not response.data:
            raise DecodeError(f"No download URL in response for {file_uri}: {response.data!r}")
        return response.data

    def _params(
        self, action: str, device: DeviceRef, file_uri: str, category: FileCategory
    ) -> dict[str, str]:
        return {
            "action": action,
            "orgId": self._org_id,
            "fileUri": file_uri,
            "category": category.value,
            **device.to_params(),
        }
