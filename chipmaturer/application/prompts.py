"""
Prompt Library - Reusable prompts, at most one flagged global.
"""

import logging
import uuid
from typing import List, Optional

from ..domain.exceptions import NotFoundError, ValidationError
from ..domain.models import Prompt, utc_now
from ..infrastructure.persistence import Database

logger = logging.getLogger(__name__)


class PromptLibrary:

    def __init__(self, db: Database):
        self._db = db

    def list(self) -> List[Prompt]:
        return self._db.get_all_prompts()

    def get(self, prompt_id: str) -> Prompt:
        prompt = self._db.get_prompt(prompt_id)
        if prompt is None:
            raise NotFoundError(f"Prompt {prompt_id} not found")
        return prompt

    def add(self, name: str, content: str, category: str = "general",
            is_global: bool = False) -> Prompt:
        name = (name or "").strip()
        content = (content or "").strip()
        if not name or not content:
            raise ValidationError("Prompt name and content are required.")

        prompt = Prompt(
            id=uuid.uuid4().hex,
            name=name,
            content=content,
            category=(category or "general").strip(),
            is_global=is_global,
            created_at=utc_now(),
        )
        self._db.add_prompt(prompt)
        logger.info(f"Prompt added: {name}{' (global)' if is_global else ''}")
        return prompt

    def update(self, prompt_id: str, **fields) -> Prompt:
        self.get(prompt_id)
        for key in ("name", "content"):
            if key in fields and not (fields[key] or "").strip():
                raise ValidationError(f"Prompt {key} cannot be empty.")
        try:
            self._db.update_prompt(prompt_id, **fields)
        except ValueError as e:
            raise ValidationError(str(e)) from e
        return self.get(prompt_id)

    def delete(self, prompt_id: str) -> None:
        self.get(prompt_id)
        self._db.delete_prompt(prompt_id)

    def set_global(self, prompt_id: str) -> Prompt:
        if not self._db.set_global_prompt(prompt_id):
            raise NotFoundError(f"Prompt {prompt_id} not found")
        return self.get(prompt_id)

    def global_prompt(self) -> Optional[str]:
        prompt = self._db.get_global_prompt()
        return prompt.content if prompt else None
