import os
from datetime import datetime, timezone

# Banco em memória e sem arquivo de log: precisa vir antes de importar o backend
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FILE"] = ""

import pytest

import models
from core.engine_settings import EngineSettings
from database import SessionLocal, engine
from rabbitmq_client import rabbitmq
from services import engine as flow_engine
from services.collaborators import Collaborators

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class FakeSender:
    """Canal de envio que só registra as mensagens."""

    def __init__(self, error: Exception = None):
        self.sent = []
        self.error = error

    async def send(self, contact, channel_id, message):
        if self.error:
            raise self.error
        self.sent.append((contact.id, channel_id, message))
        return {"messages": [{"id": f"wamid.{len(self.sent)}"}]}

    @property
    def texts(self):
        return [m.text for _, _, m in self.sent]


class ScriptedAI:
    """Devolve (ou levanta) os itens do roteiro, um por chamada."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []

    async def complete(self, system_prompt, user_prompt, provider="openai"):
        self.calls.append((system_prompt, user_prompt, provider))
        item = self.script.pop(0)
        if isinstance(item, Exception):
            raise item
        return item


class FakeCRM:
    def __init__(self):
        self.calls = []

    async def apply(self, contact, action, value):
        self.calls.append((contact.id, action, value))


class FakeChat:
    def __init__(self):
        self.labels = {}

    async def apply(self, contact, action, tags):
        current = self.labels.setdefault(contact.id, set())
        if action == "add":
            current.update(tags)
        else:
            current.difference_update(tags)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return EngineSettings(dispatch_concurrency=1, ai_retry_base_delay=1.0)


@pytest.fixture(autouse=True)
def rabbit_offline(monkeypatch):
    """RabbitMQ fora do ar: publicações falham e o despacho ocorre em processo."""
    published = []

    async def publish(queue_name, message):
        published.append((queue_name, message))
        return False

    async def publish_event(event_type, data):
        published.append((event_type, data))
        return False

    monkeypatch.setattr(rabbitmq, "publish", publish)
    monkeypatch.setattr(rabbitmq, "publish_event", publish_event)
    return published


@pytest.fixture
def db():
    models.Base.metadata.drop_all(bind=engine)
    models.Base.metadata.create_all(bind=engine)
    flow_engine._graph_cache.clear()
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def tenant(db):
    client = models.Client(name="Cliente Teste", is_active=True)
    db.add(client)
    db.commit()
    db.refresh(client)
    return client


@pytest.fixture
def make_contact(db, tenant):
    def _make(name="Ana", phone="5511999990000", **kwargs):
        contact = models.Contact(client_id=tenant.id, name=name, phone=phone, **kwargs)
        db.add(contact)
        db.commit()
        db.refresh(contact)
        return contact
    return _make


@pytest.fixture
def sender():
    return FakeSender()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def collaborators(sender, sleeper):
    return Collaborators(
        sender=sender,
        ai=ScriptedAI(),
        crm=FakeCRM(),
        chat=FakeChat(),
        resolve_asset=lambda ref: f"https://cdn.test/{ref}",
        sleep=sleeper,
    )
