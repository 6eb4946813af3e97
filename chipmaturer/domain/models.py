"""
Domain Models
=============

Plain dataclasses shared by the store, the registries and the scheduler.
Timestamps are ISO-8601 strings in UTC, as stored in SQLite.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class ConnectionStatus(Enum):
    """Gateway handshake status of a chip."""
    ACTIVE = "active"
    INACTIVE = "inactive"
    CONNECTING = "connecting"
    ERROR = "error"


class PairStatus(Enum):
    """Run status of a pair inside the maturation engine."""
    RUNNING = "running"
    PAUSED = "paused"
    STOPPED = "stopped"


@dataclass
class Connection:
    """A managed messaging account (chip)."""
    id: str
    name: str
    phone: str
    instance_name: str
    status: str = ConnectionStatus.INACTIVE.value
    last_active: str = ""
    qr_code: str = ""
    profile_name: str = ""
    profile_picture: str = ""
    created_at: str = ""

    @property
    def is_active(self) -> bool:
        return self.status == ConnectionStatus.ACTIVE.value


@dataclass
class ChipPair:
    """Two chips scheduled to exchange messages."""
    id: str
    first_connection_id: str
    second_connection_id: str
    is_active: bool = True
    messages_count: int = 0
    last_activity: str = ""
    status: str = PairStatus.STOPPED.value
    use_instance_prompt: bool = False
    instance_prompt: str = ""
    created_at: str = ""

    @property
    def is_paused(self) -> bool:
        return self.status == PairStatus.PAUSED.value

    @property
    def override_prompt(self) -> Optional[str]:
        """Pair-specific prompt, only when enabled and non-empty."""
        if self.use_instance_prompt and self.instance_prompt.strip():
            return self.instance_prompt
        return None

    def other_side(self, connection_id: str) -> str:
        if connection_id == self.first_connection_id:
            return self.second_connection_id
        return self.first_connection_id


@dataclass
class Message:
    """A generated message that was relayed through the gateway."""
    id: str
    pair_id: str
    sender_id: str
    receiver_id: str
    content: str
    timestamp: str
    model: str = ""
    usage: Optional[dict] = None


@dataclass
class Prompt:
    """Reusable instruction text for the model."""
    id: str
    name: str
    content: str
    category: str = "general"
    is_global: bool = False
    created_at: str = ""


@dataclass
class Notice:
    """User-visible outcome of an engine action."""
    level: str
    title: str
    message: str
    timestamp: str = field(default_factory=utc_now)
