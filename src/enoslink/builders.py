"""Builders that turn device data into :class:`~enoslink.messages.Request` objects.

Values that are :class:`pathlib.Path` instances are treated as file
attachments: each is registered in the request's file manifest and replaced
in the outgoing parameters by a ``local://<name>`` reference::

    request = (
        MeasurepointPostRequestBuilder()
        .add_measurepoint(DeviceRef(asset_id="A1"), 1000, {"temp": 25})
        .add_measurepoint(DeviceRef(asset_id="A1"), 1000, {"snapshot": Path("cam.jpg")})
        .build()
    )
"""

from __future__ import annotations

from collections.abc import Mapping
from pathlib import Path
from typing import Any

from enoslink._constants import LOCAL_FILE_SCHEME
from enoslink._crypto import generate_file_name, md5_hex
from enoslink.messages import DeviceRef, FeatureType, FileManifestEntry, Request, RequestAction


class FileRegistry:
    """Collects file attachments for a single request."""

    def __init__(self) -> None:
        self._entries: list[FileManifestEntry] = []

    @property
    def entries(self) -> tuple[FileManifestEntry, ...]:
        return tuple(self._entries)

    def register(
        self, device: DeviceRef, feature_type: FeatureType, feature_id: str, path: Path
    ) -> str:
        """Register *path* and return the ``local://`` reference that replaces it."""
        entry = FileManifestEntry(
            local_name=generate_file_name(path),
            source=path,
            feature_type=feature_type,
            feature_id=feature_id,
            device=device,
            content_hash=md5_hex(path.read_bytes()),
        )
        self._entries.append(entry)
        return LOCAL_FILE_SCHEME + entry.local_name


def _substitute_files(
    registry: FileRegistry,
    device: DeviceRef,
    feature_type: FeatureType,
    values: Mapping[str, Any],
) -> dict[str, Any]:
    """Replace file values with ``local://`` references.

    Files directly under a feature key and files one mapping level below it
    are substituted; both are recorded under the top-level key as feature
    id.  Anything nested deeper is passed through unchanged.
    """
    out: dict[str, Any] = {}
    for key, value in values.items():
        if isinstance(value, Path):
            out[key] = registry.register(device, feature_type, key, value)
        elif isinstance(value, Mapping):
            out[key] = {
                sub_key: (
                    registry.register(device, feature_type, key, sub_value)
                    if isinstance(sub_value, Path)
                    else sub_value
                )
                for sub_key, sub_value in value.items()
            }
        else:
            out[key] = value
    return out


class _BaseBuilder:
    action: str
    feature_type: FeatureType

    def __init__(self, *, request_id: str | None = None) -> None:
        self._request_id = request_id

    def _create_params(self, registry: FileRegistry) -> list[dict[str, Any]]:
        raise NotImplementedError

    def build(self) -> Request:
        """Build the request.

        Raises :class:`~enoslink.errors.EncodingError` if any device has
        neither an asset id nor a product/device key pair.
        """
        registry = FileRegistry()
        params = self._create_params(registry)
        return Request(
            action=self.action,
            method=self.action,
            params=params,
            files=registry.entries,
            id=self._request_id,
        )


class MeasurepointPostRequestBuilder(_BaseBuilder):
    """Build a ``postMeasurepoint`` request.

    Measurepoints are grouped by ``(device, time)``; groups are emitted in
    the order they were first added.
    """

    action = RequestAction.POST_MEASUREPOINT
    feature_type = FeatureType.MEASUREPOINT

    def __init__(self, *, request_id: str | None = None) -> None:
        super().__init__(request_id=request_id)
        self._groups: dict[tuple[DeviceRef, int], dict[str, Any]] = {}

    def add_measurepoint(
        self, device: DeviceRef, time: int, values: Mapping[str, Any]
    ) -> MeasurepointPostRequestBuilder:
        self._groups.setdefault((device, time), {}).update(values)
        return self

    def _create_params(self, registry: FileRegistry) -> list[dict[str, Any]]:
        params = []
        for (device, time), values in self._groups.items():
            params.append(
                {
                    **device.to_params(),
                    "time": time,
                    "measurepoints": _substitute_files(
                        registry, device, self.feature_type, values
                    ),
                }
            )
        return params


class AttributePostRequestBuilder(_BaseBuilder):
    """Build a ``postAttribute`` request, one parameter entry per device."""

    action = RequestAction.POST_ATTRIBUTE
    feature_type = FeatureType.ATTRIBUTE

    def __init__(self, *, request_id: str | None = None) -> None:
        super().__init__(request_id=request_id)
        self._groups: dict[DeviceRef, dict[str, Any]] = {}

    def add_attribute(
        self, device: DeviceRef, values: Mapping[str, Any]
    ) -> AttributePostRequestBuilder:
        self._groups.setdefault(device, {}).update(values)
        return self

    def _create_params(self, registry: FileRegistry) -> list[dict[str, Any]]:
        return [
            {
                **device.to_params(),
                "attributes": _substitute_files(registry, device, self.feature_type, values),
            }
            for device, values in self._groups.items()
        ]


class EventPostRequestBuilder(_BaseBuilder):
    """Build a ``postEvent`` request.

    Events are grouped by ``(device, time)``.  Each event's output values
    form the nested level, so a file attached to an event output is
    registered under the event identifier.
    """

    action = RequestAction.POST_EVENT
    feature_type = FeatureType.EVENT

    def __init__(self, *, request_id: str | None = None) -> None:
        super().__init__(request_id=request_id)
        self._groups: dict[tuple[DeviceRef, int], dict[str, Any]] = {}

    def add_event(
        self, device: DeviceRef, time: int, event_id: str, values: Mapping[str, Any]
    ) -> EventPostRequestBuilder:
        self._groups.setdefault((device, time), {})[event_id] = dict(values)
        return self

    def _create_params(self, registry: FileRegistry) -> list[dict[str, Any]]:
        return [
            {
                **device.to_params(),
                "time": time,
                "events": _substitute_files(registry, device, self.feature_type, events),
            }
            for (device, time), events in self._groups.items()
        ]
