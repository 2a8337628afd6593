"""Shared fixtures: file-backed SQLite per test, settings and fakes for the
chain oracle, the Lightning node and the admin message channel."""

from __future__ import annotations

import asyncio
import os

# Settings are read once per process (lru_cache); fix the environment first.
os.environ.setdefault("ENV", "local")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("BASE_URL", "https://raffle.test")
os.environ.setdefault("ADMIN_API_KEY", "admin-secret")
os.environ.setdefault("ADMIN_CHAT_IDS", "100,200")
os.environ.setdefault("QUIET_HOURS_TZ", "UTC")
os.environ.setdefault("MEMPOOL_API_URLS", "https://mempool.test/api")
os.environ.pop("BOT_TOKEN", None)

from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

import pytest
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from raffle_backend.app.core.config_core import Settings
from raffle_backend.app.core.database_core import Base
from raffle_backend.app.core.errors_core import OracleUnavailableError, PaymentError, PaymentOutcomeUnknownError
from raffle_backend.app.crud.tickets_crud import TicketsCRUD
from raffle_backend.app.services.notification_service import NotificationService
from raffle_backend.app.services.payment_service import DecodedInvoice, PaymentResult

DAYTIME = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)
EVENING = datetime(2024, 5, 1, 20, 0, tzinfo=timezone.utc)
NEXT_MORNING = datetime(2024, 5, 2, 9, 5, tzinfo=timezone.utc)


class FakeOracle:
    def __init__(self, height: int = 0, hashes: Optional[Dict[int, str]] = None) -> None:
        self.height = height
        self.hashes: Dict[int, str] = dict(hashes or {})
        self.fail = False
        self.hash_calls: List[int] = []

    async def get_height(self) -> int:
        if self.fail:
            raise OracleUnavailableError("All oracle endpoints failed.")
        return self.height

    async def get_hash_at(self, height: int) -> str:
        if self.fail:
            raise OracleUnavailableError("All oracle endpoints failed.")
        self.hash_calls.append(height)
        return self.hashes.get(height, "00" * 31 + "01")


class FakeChannel:
    def __init__(self, ok: bool = True) -> None:
        self.ok = ok
        self.sent: List[Tuple[str, str]] = []

    async def send_message(self, recipient: str, text: str) -> bool:
        self.sent.append((recipient, text))
        return self.ok

    def texts_to(self, recipient: str) -> List[str]:
        return [text for to, text in self.sent if to == recipient]


class FakePayments:
    """Decodes any invoice to `invoice_amounts[pr]` sats; pays or fails on demand."""

    def __init__(self) -> None:
        self.invoice_amounts: Dict[str, int] = {}
        self.fail_with: Optional[str] = None
        self.no_answer = False
        self.paid: List[str] = []
        self.address_payments: List[Tuple[str, int]] = []

    async def decode(self, bolt11: str) -> DecodedInvoice:
        return DecodedInvoice(amount_sats=self.invoice_amounts.get(bolt11, 0), payment_hash="ab" * 32)

    async def pay(self, bolt11: str) -> PaymentResult:
        await asyncio.sleep(0)
        if self.fail_with:
            raise PaymentError(self.fail_with)
        self.paid.append(bolt11)
        return PaymentResult(payment_hash="cd" * 32, preimage="ef" * 32)

    async def pay_lightning_address(self, address: str, amount_sats: int, comment: str = "") -> PaymentResult:
        if self.no_answer:
            raise PaymentOutcomeUnknownError("LND request failed: ReadTimeout('timed out')")
        if self.fail_with:
            raise PaymentError(self.fail_with)
        self.address_payments.append((address, amount_sats))
        return PaymentResult(payment_hash="12" * 32, preimage=None)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        ENV="local",
        BASE_URL="https://raffle.test",
        DATABASE_URL="sqlite+aiosqlite://",
        ADMIN_CHAT_IDS="100,200",
        ADMIN_API_KEY="admin-secret",
        QUIET_HOURS_TZ="UTC",
        MEMPOOL_API_URLS="https://mempool.test/api",
        TELEGRAM_BOT_TOKEN=None,
    )


@pytest.fixture
async def session_factory(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/raffle.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    factory = async_sessionmaker(engine, expire_on_commit=False, autoflush=False)
    yield factory
    await engine.dispose()


@pytest.fixture
async def session(session_factory):
    async with session_factory() as s:
        yield s


@pytest.fixture
def oracle() -> FakeOracle:
    return FakeOracle()


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def payments() -> FakePayments:
    return FakePayments()


@pytest.fixture
def notifications(session, channel, settings) -> NotificationService:
    return NotificationService(session, channel, settings=settings)


async def add_tickets(session, raffle_block: int, count: int, *, chat_ids: bool = False, invalid: int = 0) -> list:
    crud = TicketsCRUD(session)
    tickets = []
    for i in range(count):
        tickets.append(
            await crud.create(
                raffle_block=raffle_block,
                owner_ref=f"user{i}@example.com",
                owner_chat_id=str(9000 + i) if chat_ids else None,
                lightning_address=f"user{i}@wallet.test",
            )
        )
    for i in range(invalid):
        await crud.create(raffle_block=raffle_block, owner_ref=f"bad{i}@example.com", is_valid=False)
    await session.commit()
    return tickets
