"""chatrelay engine - agent CLI process orchestration and stream decoding."""
from .config import EventCallback, RelayConfig, fire_event
from .errors import (
    ConfigError,
    InvalidSessionIdError,
    RelayConnectionError,
    RelayError,
    UnrecognizedEventError,
)
from .stream_decoder import DecodedLine, StreamDecoder

__all__ = [
    "ConfigError",
    "DecodedLine",
    "EventCallback",
    "InvalidSessionIdError",
    "RelayConfig",
    "RelayConnectionError",
    "RelayError",
    "StreamDecoder",
    "UnrecognizedEventError",
    "fire_event",
]
