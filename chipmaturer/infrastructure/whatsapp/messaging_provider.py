"""
Messaging Provider - Abstraction Layer for the WhatsApp Gateway
================================================================

Provides a unified interface for the three gateway operations the engine
needs: create an instance (QR handshake), relay a text message, and read an
instance's connection state.

Raw gateway JSON never leaves the provider. Every call returns one of a small
set of tagged result variants, with GatewayFailure as the shared failure arm.

USAGE:
    gateway = EvolutionGateway()
    result = gateway.send_text("acct_a", "+5511999990000", "Hello!")
    if isinstance(result, GatewayFailure):
        print(result.error)
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Optional, Union

from ...domain.exceptions import RemoteCallError

logger = logging.getLogger(__name__)


class GatewayError(RemoteCallError):
    """Raised by callers that turn a GatewayFailure into an exception."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


@dataclass(frozen=True)
class GatewayFailure:
    error: str
    status_code: Optional[int] = None
    details: Optional[dict] = None

    def to_exception(self) -> GatewayError:
        return GatewayError(self.error, self.status_code)


@dataclass(frozen=True)
class InstanceCreated:
    instance_name: str
    qr_code: Optional[str] = None


@dataclass(frozen=True)
class MessageSent:
    message_id: Optional[str] = None


@dataclass(frozen=True)
class ProfileInfo:
    phone: Optional[str] = None
    display_name: Optional[str] = None
    picture: Optional[str] = None


@dataclass(frozen=True)
class InstanceStatus:
    instance_name: str
    connection_state: str
    qr_code: Optional[str] = None
    profile: ProfileInfo = field(default_factory=ProfileInfo)

    @property
    def is_open(self) -> bool:
        return self.connection_state == "open"


CreateInstanceResult = Union[InstanceCreated, GatewayFailure]
SendResult = Union[MessageSent, GatewayFailure]
StatusResult = Union[InstanceStatus, GatewayFailure]


class MessagingProvider(ABC):
    """
    Abstract base class for WhatsApp gateway providers.
    Implement this interface to add new messaging backends.
    """

    @abstractmethod
    def create_instance(self, instance_name: str, display_name: str) -> CreateInstanceResult:
        """Register a new instance and return its QR handshake code."""
        ...

    @abstractmethod
    def send_text(self, instance_name: str, number: str, text: str) -> SendResult:
        """Send a text message from an instance to a phone handle."""
        ...

    @abstractmethod
    def fetch_status(self, instance_name: str) -> StatusResult:
        """Read connection state, a fresh QR code and profile data."""
        ...
