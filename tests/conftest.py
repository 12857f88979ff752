"""Shared test fixtures and helpers."""

import os

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("OPENAI_API_KEY", "test-key")
os.environ.setdefault("PUBLIC_BASE_URL", "http://testserver")

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from agenda.core.database import Base
from agenda.core.exceptions import ExternalServiceUnavailable
from agenda.models import Business, Professional, Service, WhatsappInstance
from agenda.services.commit_pipeline import CommitGuard
from agenda.services.notifications import NotificationBroadcaster

CONTACT_JID = "554999214230@s.whatsapp.net"
CONTACT_PHONE = "554999214230"
INSTANCE_NAME = "barbearia-centro"


class FakeMessaging:
    """Records outbound messages instead of calling the Evolution API."""

    def __init__(self):
        self.sent: list[tuple[str, str]] = []
        self.via: list[str] = []
        self.fail_send = False
        self.media: str | None = None

    async def send_text(self, instance, number, text):
        if self.fail_send:
            raise ExternalServiceUnavailable("evolution", "down")
        self.sent.append((number, text))
        self.via.append(instance.instance_name)
        return {"key": {"id": f"out-{len(self.sent)}"}}

    async def fetch_media_base64(self, instance, message):
        if self.media is None:
            raise ExternalServiceUnavailable("evolution", "media unavailable")
        return self.media

    @property
    def texts(self) -> list[str]:
        return [text for _, text in self.sent]


@dataclass
class FakePaymentGateway:
    links: list[dict] = field(default_factory=list)
    payments: dict = field(default_factory=dict)

    async def create_payment_link(self, amount, reference, metadata=None, notification_url=None, title="Agendamento"):
        self.links.append({
            "amount": amount,
            "reference": reference,
            "metadata": metadata,
            "notification_url": notification_url,
            "title": title,
        })
        return f"https://pay.test/checkout/{reference}"

    async def get_payment(self, payment_id):
        return self.payments[payment_id]


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest_asyncio.fixture
async def seed(db):
    business = Business(
        slug="barbearia-centro",
        business_name="Barbearia Centro",
        timezone="America/Sao_Paulo",
        opening_hours_text="Segunda a sábado, 09:00 às 19:00",
        mercadopago_access_token="TEST-token",
    )
    db.add(business)
    await db.flush()

    instance = WhatsappInstance(business_id=business.id, instance_name=INSTANCE_NAME, status="open")
    magnus = Professional(
        business_id=business.id, name="Magnus",
        work_days=[0, 1, 2, 3, 4, 5, 6], work_start_time="09:00", work_end_time="19:00",
    )
    ana = Professional(
        business_id=business.id, name="Ana",
        work_days=[1, 2, 3, 4, 5], work_start_time="09:00", work_end_time="18:00",
    )
    corte = Service(
        business_id=business.id, service_name="Corte de cabelo",
        base_price=Decimal("60.00"), duration_minutes=30,
        created_at=datetime.utcnow() - timedelta(minutes=1),
    )
    barba = Service(
        business_id=business.id, service_name="Barba",
        base_price=Decimal("0"), duration_minutes=30,
    )
    db.add_all([instance, magnus, ana, corte, barba])
    await db.commit()

    return SimpleNamespace(
        business=business, instance=instance,
        magnus=magnus, ana=ana, corte=corte, barba=barba,
    )


@pytest.fixture
def messaging():
    return FakeMessaging()


@pytest.fixture
def payment_gateway():
    return FakePaymentGateway()


@pytest.fixture
def broadcaster():
    return NotificationBroadcaster()


@pytest.fixture
def guard():
    return CommitGuard()


@pytest.fixture
def gateway_factory(payment_gateway):
    return lambda business: payment_gateway if business and business.mercadopago_access_token else None


def evolution_message(text=None, message_id="msg-1", jid=CONTACT_JID, push_name="João", from_me=False, message=None):
    """Evolution API ``messages.upsert`` webhook body."""
    return {
        "event": "messages.upsert",
        "instance": INSTANCE_NAME,
        "data": {
            "key": {"remoteJid": jid, "fromMe": from_me, "id": message_id},
            "pushName": push_name,
            "message": message if message is not None else {"conversation": text},
            "messageType": "conversation",
        },
    }
