"""Python client for the EnOS HTTP integration broker."""

from enoslink.builders import (
    AttributePostRequestBuilder,
    EventPostRequestBuilder,
    MeasurepointPostRequestBuilder,
)
from enoslink.client import Connection
from enoslink.config import ConnectionConfig
from enoslink.errors import (
    AuthError,
    BrokerError,
    ClientError,
    DecodeError,
    EncodingError,
    ServerError,
    TransportError,
    UploadError,
)
from enoslink.messages import DeviceRef, FileCategory, FileMode, Request, Response, UriInfo

__all__ = [
    "AttributePostRequestBuilder",
    "AuthError",
    "BrokerError",
    "ClientError",
    "Connection",
    "ConnectionConfig",
    "DecodeError",
    "DeviceRef",
    "EncodingError",
    "EventPostRequestBuilder",
    "FileCategory",
    "FileMode",
    "MeasurepointPostRequestBuilder",
    "Request",
    "Response",
    "ServerError",
    "TransportError",
    "UploadError",
    "UriInfo",
]
