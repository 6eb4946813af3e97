"""
Pair Registry - CRUD over chip pairs, kept in sync with the scheduler.
"""

import logging
import uuid
from typing import List

from ..domain.exceptions import NotFoundError, ValidationError
from ..domain.models import ChipPair, Message, PairStatus, utc_now
from ..infrastructure.persistence import Database
from .scheduler import ConversationScheduler

logger = logging.getLogger(__name__)


class PairRegistry:

    def __init__(self, db: Database, scheduler: ConversationScheduler):
        self._db = db
        self._scheduler = scheduler

    def list(self) -> List[ChipPair]:
        return self._db.get_all_pairs()

    def get(self, pair_id: str) -> ChipPair:
        pair = self._db.get_pair(pair_id)
        if pair is None:
            raise NotFoundError(f"Pair {pair_id} not found")
        return pair

    def add(self, first_connection_id: str, second_connection_id: str) -> ChipPair:
        """
        Pair two connected chips.

        Rejected when a side is missing, both sides are the same chip, a chip
        is unknown or not active, or the two chips are already paired.
        """
        if not first_connection_id or not second_connection_id:
            raise ValidationError("Select two chips to create a pair.")
        if first_connection_id == second_connection_id:
            raise ValidationError("Select two different chips to create a pair.")

        for connection_id in (first_connection_id, second_connection_id):
            connection = self._db.get_connection(connection_id)
            if connection is None:
                raise ValidationError(f"Connection {connection_id} not found.")
            if not connection.is_active:
                raise ValidationError(f"Connection '{connection.name}' is not active.")

        if self._db.find_pair(first_connection_id, second_connection_id):
            raise ValidationError("This pair of chips is already configured.")

        now = utc_now()
        pair = ChipPair(
            id=uuid.uuid4().hex,
            first_connection_id=first_connection_id,
            second_connection_id=second_connection_id,
            is_active=True,
            messages_count=0,
            last_activity=now,
            status=PairStatus.STOPPED.value,
            use_instance_prompt=False,
            created_at=now,
        )
        self._db.add_pair(pair)
        logger.info(f"Pair added: {first_connection_id} <-> {second_connection_id}")
        return pair

    def remove(self, pair_id: str) -> None:
        self.get(pair_id)
        self._scheduler.cancel_pair(pair_id)
        self._db.delete_pair(pair_id)
        logger.info(f"Pair removed: {pair_id}")

    def toggle_active(self, pair_id: str) -> ChipPair:
        """Deactivating pauses the pair; reactivating makes it runnable again."""
        pair = self.get(pair_id)

        if pair.is_active:
            self._db.update_pair(pair_id, is_active=False)
            self._scheduler.pause_pair(pair_id)
        else:
            self._db.update_pair(pair_id, is_active=True, status=PairStatus.STOPPED.value)
            self._scheduler.resume_pair(pair_id)

        return self.get(pair_id)

    def toggle_prompt_override(self, pair_id: str) -> ChipPair:
        pair = self.get(pair_id)
        self._db.update_pair(pair_id, use_instance_prompt=not pair.use_instance_prompt)
        return self.get(pair_id)

    def set_override_text(self, pair_id: str, text: str) -> ChipPair:
        self.get(pair_id)
        self._db.update_pair(pair_id, instance_prompt=text or "")
        return self.get(pair_id)

    def messages(self, pair_id: str) -> List[Message]:
        """Pair history, newest first."""
        self.get(pair_id)
        return list(reversed(self._db.get_pair_messages(pair_id)))
