"""Request and response types exchanged with the integration broker."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from pathlib import Path, PurePath
from typing import Any

from enoslink.errors import DecodeError, EncodingError


class FeatureType(str, Enum):
    """Kind of device feature a file attachment belongs to."""

    MEASUREPOINT = "MEASUREPOINT"
    ATTRIBUTE = "ATTRIBUTE"
    EVENT = "EVENT"


class FileCategory(str, Enum):
    """Storage category passed to the download endpoints."""

    FEATURE = "feature"
    OTA = "ota"


class FileMode(str, Enum):
    """How attached files travel to the broker.

    ``DIRECT`` embeds file bytes in the publish body; ``INDIRECT`` sends
    only metadata and uploads bytes afterwards to presigned URLs.
    """

    DIRECT = "direct"
    INDIRECT = "indirect"


class RequestAction:
    POST_MEASUREPOINT = "postMeasurepoint"
    POST_ATTRIBUTE = "postAttribute"
    POST_EVENT = "postEvent"
    DELETE = "delete"
    DOWNLOAD = "download"
    GET_DOWNLOAD_URL = "getDownloadUrl"


@dataclass(frozen=True)
class DeviceRef:
    """Identity of a device, either by asset id or by product/device key.

    ``asset_id`` takes precedence when both forms are given.
    """

    asset_id: str | None = None
    product_key: str | None = None
    device_key: str | None = None

    def to_params(self) -> dict[str, str]:
        """Return the wire form: ``{"assetId"}`` or ``{"productKey", "deviceKey"}``.

        Raises :class:`EncodingError` if neither form is complete.
        """
        if self.asset_id:
            return {"assetId": self.asset_id}
        if self.product_key and self.device_key:
            return {"productKey": self.product_key, "deviceKey": self.device_key}
        raise EncodingError("Device requires an assetId or a productKey/deviceKey pair.")


@dataclass(frozen=True)
class FileManifestEntry:
    """A file registered while building a request."""

    local_name: str
    """Generated unique name; the value is referenced as ``local://<local_name>``."""

    source: Path
    """File on disk the bytes are read from."""

    feature_type: FeatureType

    feature_id: str
    """Measurepoint, attribute or event identifier the file belongs to."""

    device: DeviceRef

    content_hash: str
    """Hex MD5 of the file contents at registration time."""

    def to_disposition(self) -> dict[str, str]:
        """Manifest entry as it appears in the envelope's ``files`` map."""
        return {
            "featureId": self.feature_id,
            "md5": self.content_hash,
            **self.device.to_params(),
        }


@dataclass(frozen=True)
class UriInfo:
    """Presigned upload target returned by the broker in indirect mode."""

    filename: str
    """Generated local name of the file, not its name on disk.  Use
    :meth:`Request.file_for` to get back to the source path."""

    upload_url: str
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> UriInfo:
        try:
            return cls(
                filename=str(raw["filename"]),
                upload_url=str(raw["uploadUrl"]),
                headers={str(k): str(v) for k, v in (raw.get("headers") or {}).items()},
            )
        except (KeyError, AttributeError, TypeError) as e:
            raise DecodeError(f"Malformed uriInfo entry: {raw!r}") from e


@dataclass(frozen=True)
class Request:
    """An immutable, encodable integration request.

    Built by the builders in :mod:`enoslink.builders`.  ``id`` and
    ``version`` are normally left unset and filled in by the connection
    at publish time.
    """

    action: str
    method: str
    params: Any
    files: tuple[FileManifestEntry, ...] = ()
    id: str | None = None
    version: str | None = None

    @cached_property
    def file_disposition(self) -> dict[str, dict[str, str]]:
        """The ``files`` section of the envelope, keyed by local name."""
        return {entry.local_name: entry.to_disposition() for entry in self.files}

    def file_for(self, local_name: str) -> FileManifestEntry | None:
        """Look up a manifest entry by its generated local name."""
        for entry in self.files:
            if entry.local_name == local_name:
                return entry
        return None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.id is not None:
            payload["id"] = self.id
        if self.version is not None:
            payload["version"] = self.version
        payload["method"] = self.method
        if self.params is not None:
            payload["params"] = self.params
        payload["files"] = self.file_disposition
        return payload

    def encode(self) -> bytes:
        """Serialize the JSON envelope."""
        return json.dumps(
            self.to_payload(), separators=(",", ":"), default=_encode_default
        ).encode("utf-8")


def _encode_default(value: object) -> str:
    # Paths nested below the substituted level are sent as plain strings.
    if isinstance(value, PurePath):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


@dataclass
class Response:
    """Decoded broker response envelope.

    ``code == 0`` means success; any other code is a broker-reported
    failure whose ``data`` is still available.
    """

    code: int
    msg: str = ""
    request_id: str | None = None
    data: Any = None

    @property
    def is_success(self) -> bool:
        return self.code == 0

    @property
    def uri_infos(self) -> list[UriInfo]:
        """Presigned upload targets carried in ``data.uriInfoList``.

        Each ``filename`` is the generated local name from the request's
        file manifest.
        """
        if not isinstance(self.data, dict):
            return []
        raw = self.data.get("uriInfoList") or []
        if not isinstance(raw, list):
            raise DecodeError(f"uriInfoList is not a list: {raw!r}")
        return [UriInfo.from_dict(item) for item in raw]

    @classmethod
    def from_dict(cls, body: object) -> Response:
        if not isinstance(body, dict) or "code" not in body:
            raise DecodeError(f"Unexpected response body: {body!r}")
        try:
            code = int(body["code"])
        except (TypeError, ValueError) as e:
            raise DecodeError(f"Non-integer response code: {body['code']!r}") from e
        request_id = body.get("requestId")
        return cls(
            code=code,
            msg=str(body.get("msg") or ""),
            request_id=None if request_id is None else str(request_id),
            data=body.get("data"),
        )
