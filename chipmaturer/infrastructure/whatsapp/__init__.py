from .messaging_provider import (
    MessagingProvider,
    GatewayError,
    GatewayFailure,
    InstanceCreated,
    InstanceStatus,
    MessageSent,
    ProfileInfo,
)
from .evolution_client import EvolutionGateway, normalize_endpoint

__all__ = [
    "MessagingProvider",
    "GatewayError",
    "GatewayFailure",
    "InstanceCreated",
    "InstanceStatus",
    "MessageSent",
    "ProfileInfo",
    "EvolutionGateway",
    "normalize_endpoint",
]
