# oracle_cards/remote_api/__init__.py
from .client import HTTPRemoteGateway
from .exceptions import (
    RemoteGatewayError, TransportError, RejectedError,
    AuthenticationError, WireFormatError
)
from .gateway import RemoteGateway
from .memory_backend import InMemoryBackend, InMemoryRemoteGateway
from .schemas import (
    PushOperation, DeltaRequest, PushResult, DeltaResponse,
    OperationType # Export Literal
)
from .utils import record_to_wire, record_from_wire, build_push_op

__all__ = [
    "RemoteGateway", "HTTPRemoteGateway", "InMemoryBackend", "InMemoryRemoteGateway",
    "RemoteGatewayError", "TransportError", "RejectedError",
    "AuthenticationError", "WireFormatError",
    "PushOperation", "DeltaRequest", "PushResult", "DeltaResponse", "OperationType",
    "record_to_wire", "record_from_wire", "build_push_op",
]
