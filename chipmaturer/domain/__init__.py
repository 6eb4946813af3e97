from .exceptions import (
    MaturadorError,
    ValidationError,
    NotFoundError,
    ConfigurationError,
    RemoteCallError,
)
from .models import (
    Connection,
    ConnectionStatus,
    ChipPair,
    PairStatus,
    Message,
    Prompt,
    Notice,
    utc_now,
)

__all__ = [
    "MaturadorError",
    "ValidationError",
    "NotFoundError",
    "ConfigurationError",
    "RemoteCallError",
    "Connection",
    "ConnectionStatus",
    "ChipPair",
    "PairStatus",
    "Message",
    "Prompt",
    "Notice",
    "utc_now",
]
