"""Live updates — push patches or reloads to connected browsers.

Server -> client over Server-Sent Events, client -> server over JSON POSTs.
"""

from perch.live.broker import LiveUpdateBroker
from perch.live.connection import Connection, ConnectionState
from perch.live.protocol import (
    Ack,
    ErrorMessage,
    MessageKind,
    Patch,
    Reload,
    SSEEvent,
    Subscribe,
    decode_client_message,
    encode_message,
)

__all__ = [
    "Ack",
    "Connection",
    "ConnectionState",
    "ErrorMessage",
    "LiveUpdateBroker",
    "MessageKind",
    "Patch",
    "Reload",
    "SSEEvent",
    "Subscribe",
    "decode_client_message",
    "encode_message",
]
