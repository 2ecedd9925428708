import asyncio
import uuid
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from returns_engine import models  # noqa: F401
from returns_engine.core.errors import InvalidAmountError
from returns_engine.core.permissions import Actor, ActorRole
from returns_engine.database import Base, build_engine, build_session_factory
from returns_engine.jobs.stats_jobs import clear_cached_stats
from returns_engine.schemas.return_request import ReturnCreate
from returns_engine.services.collaborators import (
    CollaboratorError,
    Collaborators,
    LocalRBACService,
    PickupTicket,
    RefundReceipt,
    ReplacementReceipt,
)
from returns_engine.services.event_publisher import EventPublisher
from returns_engine.services.return_service import ReturnService


CUSTOMER_ID = "6f1c1a52-3c1e-4c55-9a8e-2d1f0b7c9e11"

ADMIN = Actor(id="admin-1", role=ActorRole.ADMIN, name="Asha Admin")
SUPPORT = Actor(id="support-1", role=ActorRole.SUPPORT, name="Sam Support")
WAREHOUSE = Actor(id="wh-1", role=ActorRole.WAREHOUSE, name="Wes Warehouse")
FINANCE = Actor(id="fin-1", role=ActorRole.FINANCE, name="Fay Finance")
CUSTOMER = Actor(id=CUSTOMER_ID, role=ActorRole.CUSTOMER, name="Chris Customer")


# ==================== Fake collaborators ====================

class FakePaymentService:
    def __init__(self):
        self.calls = []
        self.fail = False
        self.reject_amount = False

    async def create_refund(self, order_id, return_id, amount, method, notes=None):
        self.calls.append({"order_id": order_id, "return_id": return_id, "amount": amount, "method": method})
        if self.fail:
            raise CollaboratorError(status_code=503, message="payment gateway timeout")
        if self.reject_amount:
            raise InvalidAmountError("Amount exceeds refundable balance", {"amount": str(amount)})
        return RefundReceipt(refund_id=f"RFD-{len(self.calls):04d}", status="pending")


class FakeOrderService:
    def __init__(self):
        self.calls = []
        self.fail = False

    async def create_replacement_order(self, original_order_id, return_id, items):
        self.calls.append({"order_id": original_order_id, "return_id": return_id, "items": items})
        if self.fail:
            raise CollaboratorError(status_code=500, message="order service unavailable")
        return ReplacementReceipt(order_id=f"REPL-{len(self.calls):04d}", status="created")


class FakeShippingService:
    def __init__(self):
        self.calls = []
        self.fail = False

    async def schedule_pickup(self, address, date, carrier=None):
        self.calls.append({"address": address, "date": date, "carrier": carrier})
        if self.fail:
            raise CollaboratorError(status_code=502, message="carrier rejected pickup")
        return PickupTicket(ticket_id=f"PCK-{len(self.calls):04d}", carrier=carrier or "Delhivery")


class BarrierRBACService(LocalRBACService):
    """Holds the first `parties` permission checks until all of them arrived."""

    def __init__(self, parties: int = 2):
        self.parties = parties
        self.arrived = 0
        self.released = asyncio.Event()

    async def can_transition(self, actor_role, from_status, to_status):
        if not self.released.is_set():
            self.arrived += 1
            if self.arrived >= self.parties:
                self.released.set()
            await self.released.wait()
        return await super().can_transition(actor_role, from_status, to_status)


# ==================== Fixtures ====================

@pytest.fixture(autouse=True)
def _clear_stats_snapshot():
    clear_cached_stats()
    yield
    clear_cached_stats()


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'returns_test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def payment():
    return FakePaymentService()


@pytest.fixture
def orders():
    return FakeOrderService()


@pytest.fixture
def shipping():
    return FakeShippingService()


@pytest.fixture
def publisher():
    return EventPublisher(rabbit_url="")


@pytest.fixture
def collaborators(payment, orders, shipping):
    return Collaborators(payment=payment, orders=orders, rbac=LocalRBACService(), shipping=shipping)


@pytest.fixture
def service(db, collaborators, publisher):
    return ReturnService(db, collaborators, publisher)


@pytest_asyncio.fixture
async def client(session_factory, collaborators, publisher):
    from returns_engine.main import app
    from returns_engine.api.deps import get_return_service

    async def override_return_service():
        async with session_factory() as session:
            yield ReturnService(session, collaborators, publisher)

    app.dependency_overrides[get_return_service] = override_return_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


# ==================== Helpers ====================

def make_return_data(**overrides) -> ReturnCreate:
    data = {
        "order_id": str(uuid.uuid4()),
        "order_number": f"ORD-{uuid.uuid4().hex[:8].upper()}",
        "order_total": "100.00",
        "customer_name": "Chris Customer",
        "customer_email": "chris@example.com",
        "reason_code": "defective",
        "reason_text": "Screen flickers after a day",
        "requested_action": "refund",
        "items": [
            {
                "order_item_id": str(uuid.uuid4()),
                "product_name": "Water Purifier Filter",
                "sku": "WPF-001",
                "quantity": 1,
                "unit_price": "60.00",
            }
        ],
        "pickup_address": {"line1": "12 MG Road", "city": "Bengaluru", "pincode": "560001"},
    }
    data.update(overrides)
    return ReturnCreate(**data)


def pickup_date() -> datetime:
    return datetime.now(timezone.utc) + timedelta(days=2)


INSPECTION_PATH = ["pickup_scheduled", "picked_up", "in_transit", "received", "inspecting", "inspection_passed"]


async def advance_to_inspection_passed(service: ReturnService, return_id):
    """Approve with a pickup and walk the return through inspection."""
    await service.approve(return_id, SUPPORT, pickup_scheduled=pickup_date(), pickup_carrier="Delhivery")
    detail = None
    for status in INSPECTION_PATH:
        detail = await service.update_status(return_id, status, ADMIN)
    return detail
