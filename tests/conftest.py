"""Pytest configuration and shared fixtures."""
import random

import pytest

from chipmaturer.application import (
    ConnectionRegistry,
    ConversationScheduler,
    PairRegistry,
    PromptLibrary,
)
from chipmaturer.domain.models import Connection, ConnectionStatus, utc_now
from chipmaturer.infrastructure.config import SchedulerSettings
from chipmaturer.infrastructure.llm import ChatServiceError, GeneratedMessage
from chipmaturer.infrastructure.persistence import Database
from chipmaturer.infrastructure.whatsapp import (
    GatewayFailure,
    InstanceCreated,
    InstanceStatus,
    MessageSent,
)


class FakeChatService:
    """Stands in for ChatService; records every call."""

    def __init__(self):
        self.calls = []
        self.error = None

    def generate(self, speaker_name, prompt, history=()):
        self.calls.append({"speaker": speaker_name, "prompt": prompt, "history": list(history)})
        if self.error:
            raise ChatServiceError(self.error)
        return GeneratedMessage(
            text=f"{speaker_name} says hi #{len(self.calls)}",
            model="gpt-4o-mini",
            usage={"total_tokens": 12},
        )


class FakeGateway:
    """Stands in for EvolutionGateway; returns canned tagged results."""

    def __init__(self):
        self.sent = []
        self.created = []
        self.send_failure = None
        self.create_failure = None
        self.status = InstanceStatus(instance_name="", connection_state="open")

    def create_instance(self, instance_name, display_name):
        self.created.append((instance_name, display_name))
        if self.create_failure:
            return GatewayFailure(error=self.create_failure, status_code=400)
        return InstanceCreated(instance_name=instance_name, qr_code="data:image/png;base64,QR")

    def send_text(self, instance_name, number, text):
        if self.send_failure:
            return GatewayFailure(error=self.send_failure, status_code=500)
        self.sent.append((instance_name, number, text))
        return MessageSent(message_id=f"msg-{len(self.sent)}")

    def fetch_status(self, instance_name):
        return self.status


@pytest.fixture
def db(tmp_path):
    database = Database(tmp_path / "test.db")
    database.init()
    return database


@pytest.fixture
def chat():
    return FakeChatService()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def scheduler_settings():
    return SchedulerSettings(
        min_interval=0.01,
        max_interval=0.02,
        initial_delay=0.0,
        history_window=5,
        default_prompt="Have a casual chat.",
    )


@pytest.fixture
def scheduler(db, chat, gateway, scheduler_settings):
    return ConversationScheduler(db, chat, gateway, scheduler_settings, rng=random.Random(7))


@pytest.fixture
def pairs(db, scheduler):
    return PairRegistry(db, scheduler)


@pytest.fixture
def connections(db, gateway, pairs):
    return ConnectionRegistry(db, gateway, pairs, rng=random.Random(3))


@pytest.fixture
def prompts(db):
    return PromptLibrary(db)


@pytest.fixture
def make_connection(db):
    """Insert a connection row directly, bypassing the gateway handshake."""
    def _make(name, status=ConnectionStatus.ACTIVE, phone=None):
        connection = Connection(
            id=f"conn-{name.lower()}",
            name=name,
            phone=phone or f"+55119{abs(hash(name)) % 10 ** 7:07d}",
            instance_name=name.lower(),
            status=status.value,
            last_active=utc_now(),
            created_at=utc_now(),
        )
        return db.add_connection(connection)
    return _make


@pytest.fixture
def pair_ab(make_connection, pairs):
    a = make_connection("Acct-A")
    b = make_connection("Acct-B")
    return pairs.add(a.id, b.id)
