"""Second phase of an indirect-mode publish: uploading files to presigned URLs."""

from __future__ import annotations

import logging

from enoslink.errors import ClientError, DecodeError, ServerError, UploadError
from enoslink.messages import FileManifestEntry, Request, Response, UriInfo
from enoslink.transport import Transport

logger = logging.getLogger(__name__)


class FileUploader:
    """Uploads the files of a published request to the URLs the broker issued.

    With *auto_upload* disabled nothing is sent; the caller performs the
    uploads itself from :attr:`Response.uri_infos
    <enoslink.messages.Response.uri_infos>` and
    :meth:`Request.file_for <enoslink.messages.Request.file_for>`.
    """

    def __init__(self, transport: Transport, *, auto_upload: bool = True) -> None:
        self._transport = transport
        self.auto_upload = auto_upload

    async def complete_indirect_upload(self, request: Request, response: Response) -> None:
        """Upload every file named in *response*'s ``uriInfoList``.

        Never raises for a failed file: each upload is independent and
        failures are only logged.
        """
        try:
            uri_infos = response.uri_infos
        except DecodeError as e:
            logger.error("Cannot read upload targets of request %s: %s", request.id, e)
            return

        for info in uri_infos:
            entry = request.file_for(info.filename)
            if entry is None:
                logger.warning(
                    "No attachment named %s in request %s, skipping upload",
                    info.filename,
                    request.id,
                )
                continue
            if not self.auto_upload:
                continue
            try:
                await self._upload(entry, info)
            except (ClientError, OSError) as e:
                logger.error(
                    "Failed to upload %s to %s: %s",
                    entry.source.name,
                    info.upload_url,
                    e,
                )

    async def _upload(self, entry: FileManifestEntry, info: UriInfo) -> None:
        data = entry.source.read_bytes()
        try:
            await self._transport.put_raw(info.upload_url, data, info.headers)
        except ServerError as e:
            raise UploadError(f"Upload of {entry.source.name} rejected: {e}") from e
        logger.debug("Uploaded %s (%d bytes)", entry.source.name, len(data))
