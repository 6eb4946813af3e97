"""
Settings Module - Centralized Configuration Management
=======================================================

ARCHITECTURAL DECISION:
- All configuration is loaded from environment variables (no hardcoded secrets)
- Settings are immutable dataclasses for safety and clarity
- Single source of truth for all configurable values

EXTENSIBILITY:
- To point at another Evolution API server: set EVOLUTION_API_ENDPOINT
- To switch LLM provider: any OpenAI-compatible chat completions URL works
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from functools import lru_cache

from dotenv import load_dotenv

# Load .env file if present (development convenience)
load_dotenv()


def _env_float(name: str, default: float) -> float:
    return float(os.getenv(name, str(default)))


@dataclass(frozen=True)
class GatewaySettings:
    """Evolution API (messaging gateway) settings."""

    endpoint: str = field(default_factory=lambda: os.getenv("EVOLUTION_API_ENDPOINT", ""))
    api_key: str = field(default_factory=lambda: os.getenv("EVOLUTION_API_KEY", ""))

    # Baileys is the QR-code based integration
    integration: str = "WHATSAPP-BAILEYS"

    # Seconds to let a freshly created instance settle before asking for its QR code
    qr_wait_seconds: float = 2.0
    timeout_seconds: int = 20


@dataclass(frozen=True)
class LLMSettings:
    """OpenAI chat completions settings for message generation."""

    api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", ""))
    api_url: str = field(
        default_factory=lambda: os.getenv(
            "OPENAI_API_URL", "https://api.openai.com/v1/chat/completions"
        )
    )
    model: str = field(default_factory=lambda: os.getenv("OPENAI_MODEL", "gpt-4o-mini"))

    # Chatty, short replies
    temperature: float = 0.8
    max_tokens: int = 150
    timeout_seconds: int = 30


@dataclass(frozen=True)
class SchedulerSettings:
    """Maturation engine timing and context settings."""

    # Seconds between turns of one pair, drawn uniformly per tick
    min_interval: float = field(default_factory=lambda: _env_float("MATURADOR_MIN_INTERVAL", 10.0))
    max_interval: float = field(default_factory=lambda: _env_float("MATURADOR_MAX_INTERVAL", 30.0))

    # Delay before the first turn after start
    initial_delay: float = 1.0

    # Messages of pair history sent as context to the model
    history_window: int = 5

    # Used when neither a global prompt nor a pair override exists
    default_prompt: str = "Take part in a natural, engaging conversation."


@dataclass(frozen=True)
class Settings:
    """
    Root settings container - Single source of truth for all configuration.

    Usage:
        from chipmaturer.infrastructure.config import get_settings
        settings = get_settings()
        print(settings.gateway.endpoint)
    """

    gateway: GatewaySettings = field(default_factory=GatewaySettings)
    llm: LLMSettings = field(default_factory=LLMSettings)
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    database_file: Path = field(
        default_factory=lambda: Path(os.getenv("DATABASE_FILE", "chipmaturer.db"))
    )

    def validate(self) -> list[str]:
        """
        Validate settings and return list of warnings/errors.
        Returns empty list if all settings are valid.
        """
        issues = []

        if not self.gateway.endpoint or not self.gateway.api_key:
            issues.append(
                "WARNING: EVOLUTION_API_ENDPOINT / EVOLUTION_API_KEY not set. "
                "Connections and message relay will fail."
            )

        if not self.llm.api_key:
            issues.append(
                "WARNING: OPENAI_API_KEY not set. "
                "The maturation engine cannot generate messages."
            )

        if self.scheduler.min_interval > self.scheduler.max_interval:
            issues.append(
                f"ERROR: MATURADOR_MIN_INTERVAL ({self.scheduler.min_interval}) is greater "
                f"than MATURADOR_MAX_INTERVAL ({self.scheduler.max_interval})."
            )

        return issues


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """
    Get singleton Settings instance.
    Cached to ensure consistent settings throughout application lifecycle.
    """
    return Settings()
