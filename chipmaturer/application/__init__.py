# Application Layer
# =================
# Use cases over the store, wired to infrastructure clients by the caller.

from .scheduler import (
    ConversationScheduler,
    TurnFailed,
    TurnRecorded,
    is_eligible,
    next_speaker_id,
)
from .pairs import PairRegistry
from .connections import ConnectionRegistry, instance_name_for
from .prompts import PromptLibrary

__all__ = [
    "ConversationScheduler",
    "TurnFailed",
    "TurnRecorded",
    "is_eligible",
    "next_speaker_id",
    "PairRegistry",
    "ConnectionRegistry",
    "instance_name_for",
    "PromptLibrary",
]
