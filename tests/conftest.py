import asyncio
import copy
import json
import os
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.exceptions import GatewayUnavailable, SignatureInvalid
from app.db.session import get_gateway, get_notifier, get_payment_service
from app.main import app
from app.models.booking import Booking
from app.repositories.booking_repo import BookingRepository
from app.services.payment_service import PaymentService

_MISSING = object()

# Real MongoDB for repository tests; those tests skip when it is not set
TEST_MONGODB_URL = os.getenv("TEST_MONGODB_URL")
TEST_DATABASE_NAME = "bookings_test"


# ===== IN-MEMORY MONGO COLLECTION =====

def _resolve(value: Any, parts: List[str]) -> List[Any]:
    """All values reachable at a dotted path, fanning out over arrays."""
    if not parts:
        return [value]
    if isinstance(value, list):
        if parts[0].isdigit():
            index = int(parts[0])
            return _resolve(value[index], parts[1:]) if index < len(value) else [_MISSING]
        found = []
        for element in value:
            found.extend(_resolve(element, parts))
        return found or [_MISSING]
    if isinstance(value, dict) and parts[0] in value:
        return _resolve(value[parts[0]], parts[1:])
    return [_MISSING]


def _value_matches(value: Any, cond: Any) -> bool:
    if value is _MISSING:
        return cond is None
    return value == cond


def _cond_matches(values: List[Any], cond: Any) -> bool:
    if isinstance(cond, dict) and cond and all(k.startswith("$") for k in cond):
        for op, arg in cond.items():
            if op == "$in":
                if not any(_value_matches(v, a) for v in values for a in arg):
                    return False
            elif op == "$ne":
                if any(_value_matches(v, arg) for v in values):
                    return False
            else:
                raise NotImplementedError(op)
        return True
    return any(_value_matches(v, cond) for v in values)


def _matches(doc: Dict[str, Any], query: Dict[str, Any]) -> bool:
    for key, cond in query.items():
        if key == "$or":
            if not any(_matches(doc, sub) for sub in cond):
                return False
            continue
        if not _cond_matches(_resolve(doc, key.split(".")), cond):
            return False
    return True


def _positional_index(doc: Dict[str, Any], query: Dict[str, Any], array_field: str) -> int:
    prefix = array_field + "."
    for key, cond in query.items():
        if key.startswith(prefix):
            for index, element in enumerate(doc.get(array_field, [])):
                if _matches(element, {key[len(prefix):]: cond}):
                    return index
    raise ValueError(f"positional update on {array_field} without a matching filter")


def _set_path(doc: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = doc
    for part in parts[:-1]:
        if isinstance(target, list):
            target = target[int(part)]
        else:
            target = target.setdefault(part, {})
    if isinstance(target, list):
        target[int(parts[-1])] = value
    else:
        target[parts[-1]] = value


def _get_path(doc: Dict[str, Any], path: str, default: Any = None) -> Any:
    values = _resolve(doc, path.split("."))
    return default if values[0] is _MISSING else values[0]


class FakeCollection:
    """
    The subset of Motor's collection API the repository uses.

    Every call yields to the event loop first, so concurrent tasks
    interleave between a read and the following write, like real I/O.
    """

    def __init__(self):
        self.docs: List[Dict[str, Any]] = []

    async def create_index(self, *args, **kwargs):
        return "index"

    async def insert_one(self, doc: Dict[str, Any]):
        await asyncio.sleep(0)
        self.docs.append(copy.deepcopy(doc))

    async def find_one(self, query: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        await asyncio.sleep(0)
        for doc in self.docs:
            if _matches(doc, query):
                return copy.deepcopy(doc)
        return None

    async def find_one_and_update(self, query, update, return_document=ReturnDocument.BEFORE):
        await asyncio.sleep(0)
        for doc in self.docs:
            if not _matches(doc, query):
                continue
            before = copy.deepcopy(doc)
            for path, value in update.get("$set", {}).items():
                if ".$." in path:
                    array_field, rest = path.split(".$.", 1)
                    index = _positional_index(doc, query, array_field)
                    path = f"{array_field}.{index}.{rest}"
                _set_path(doc, path, copy.deepcopy(value))
            for path, value in update.get("$inc", {}).items():
                _set_path(doc, path, (_get_path(doc, path) or 0) + value)
            for path, value in update.get("$push", {}).items():
                current = _get_path(doc, path)
                if current is None:
                    _set_path(doc, path, [copy.deepcopy(value)])
                else:
                    current.append(copy.deepcopy(value))
            return copy.deepcopy(doc if return_document == ReturnDocument.AFTER else before)
        return None


class FakeDatabase:
    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        return self.collections.setdefault(name, FakeCollection())


# ===== GATEWAY DOUBLE =====

class FakeGateway:
    """Records every call; objects are shaped like the real gateway's dicts."""

    def __init__(self):
        self.calls: List[tuple] = []
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self.unavailable = False
        self.refund_status = "succeeded"
        self._counter = 0

    def _next_id(self, prefix: str) -> str:
        self._counter += 1
        return f"{prefix}_{self._counter:04d}"

    def _check(self, name: str, *args):
        self.calls.append((name, *args))
        if self.unavailable:
            raise GatewayUnavailable(f"Payment gateway error during {name}")

    async def create_payment_intent(self, amount_cents, metadata):
        self._check("create_payment_intent", amount_cents)
        intent_id = self._next_id("pi")
        intent = {
            "id": intent_id,
            "object": "payment_intent",
            "client_secret": f"{intent_id}_secret",
            "amount": amount_cents,
            "amount_received": 0,
            "currency": "usd",
            "status": "requires_payment_method",
            "metadata": dict(metadata),
            "latest_charge": None,
        }
        self.intents[intent_id] = intent
        return copy.deepcopy(intent)

    async def retrieve_payment_intent(self, intent_id):
        self._check("retrieve_payment_intent", intent_id)
        if intent_id not in self.intents:
            raise GatewayUnavailable(f"No such payment_intent: {intent_id}")
        return copy.deepcopy(self.intents[intent_id])

    async def create_checkout_session(self, amount_cents, product_name, description, metadata,
                                      client_reference_id, success_url, cancel_url):
        self._check("create_checkout_session", amount_cents)
        session_id = self._next_id("cs")
        session = {
            "id": session_id,
            "object": "checkout.session",
            "url": f"https://checkout.test/{session_id}",
            "amount_total": amount_cents,
            "currency": "usd",
            "metadata": dict(metadata),
            "client_reference_id": client_reference_id,
            "payment_status": "unpaid",
            "status": "open",
            "payment_intent": None,
            "success_url": success_url,
            "cancel_url": cancel_url,
        }
        self.sessions[session_id] = session
        return copy.deepcopy(session)

    async def retrieve_checkout_session(self, session_id):
        self._check("retrieve_checkout_session", session_id)
        if session_id not in self.sessions:
            raise GatewayUnavailable(f"No such checkout session: {session_id}")
        return copy.deepcopy(self.sessions[session_id])

    async def expire_checkout_session(self, session_id):
        self._check("expire_checkout_session", session_id)
        self.sessions[session_id]["status"] = "expired"
        return copy.deepcopy(self.sessions[session_id])

    async def create_refund(self, charge_id, amount_cents, reason, metadata):
        self._check("create_refund", charge_id, amount_cents)
        refund = {
            "id": self._next_id("re"),
            "object": "refund",
            "amount": amount_cents,
            "charge": charge_id,
            "currency": "usd",
            "status": self.refund_status,
            "reason": reason,
            "metadata": dict(metadata),
        }
        self.refunds.append(refund)
        return copy.deepcopy(refund)

    def construct_event(self, payload, signature):
        self.calls.append(("construct_event", signature))
        if signature != "valid-signature":
            raise SignatureInvalid("Webhook signature verification failed")
        return json.loads(payload)

    # ===== test helpers: simulate the customer paying =====

    def succeed_intent(self, intent_id: str) -> Dict[str, Any]:
        intent = self.intents[intent_id]
        intent["status"] = "succeeded"
        intent["amount_received"] = intent["amount"]
        intent["latest_charge"] = self._next_id("ch")
        return copy.deepcopy(intent)

    def fail_intent(self, intent_id: str) -> Dict[str, Any]:
        intent = self.intents[intent_id]
        charge_id = self._next_id("ch")
        intent["status"] = "requires_payment_method"
        intent["latest_charge"] = charge_id
        intent["last_payment_error"] = {"charge": charge_id, "message": "Your card was declined."}
        return copy.deepcopy(intent)

    def complete_session(self, session_id: str) -> Dict[str, Any]:
        session = self.sessions[session_id]
        intent_id = self._next_id("pi")
        session["payment_status"] = "paid"
        session["status"] = "complete"
        session["payment_intent"] = {
            "id": intent_id,
            "object": "payment_intent",
            "amount": session["amount_total"],
            "status": "succeeded",
            "latest_charge": self._next_id("ch"),
            "metadata": dict(session["metadata"]),
        }
        return copy.deepcopy(session)


def _make_event(event_type: str, obj: Dict[str, Any], event_id: str = "evt_1") -> bytes:
    return json.dumps({"id": event_id, "type": event_type, "data": {"object": obj}}).encode()


def _webhook_object(session: Dict[str, Any]) -> Dict[str, Any]:
    """Webhook payloads carry unexpanded ids."""
    obj = copy.deepcopy(session)
    if isinstance(obj.get("payment_intent"), dict):
        obj["payment_intent"] = obj["payment_intent"]["id"]
    return obj


class RecordingNotifier:
    def __init__(self):
        self.events = []

    async def payment_completed(self, event):
        self.events.append(event)


# ===== FIXTURES =====

@pytest.fixture
def fake_db():
    return FakeDatabase()


@pytest.fixture
def repo(fake_db):
    return BookingRepository(fake_db)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def service(repo, gateway):
    return PaymentService(repo, gateway, currency="usd")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest_asyncio.fixture
async def make_booking(repo):
    """Insert a booking with the given totals (cents) and return it."""
    async def _make(total_cents: int = 9000, **fields) -> Booking:
        booking = Booking(
            service="Plumbing",
            description="Fix kitchen sink",
            name="Jane Customer",
            email="jane@example.com",
            total_amount_cents=total_cents,
            **fields,
        )
        return await repo.create_booking(booking)
    return _make


@pytest_asyncio.fixture
async def api_client(repo, gateway, notifier):
    """HTTP client over the app with the store and gateway swapped for fakes."""
    app.dependency_overrides[get_payment_service] = lambda: PaymentService(repo, gateway, currency="usd")
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_notifier] = lambda: notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


@pytest.fixture
def make_event():
    return _make_event


@pytest.fixture
def webhook_object():
    return _webhook_object


@pytest_asyncio.fixture
async def test_db() -> AsyncIOMotorDatabase:
    """Clean MongoDB test database (for repository tests against a real server)."""
    if not TEST_MONGODB_URL:
        pytest.skip("TEST_MONGODB_URL not set")
    client = AsyncIOMotorClient(TEST_MONGODB_URL, tz_aware=True, serverSelectionTimeoutMS=3000)
    db = client[TEST_DATABASE_NAME]

    await client.drop_database(TEST_DATABASE_NAME)
    await db["bookings"].create_index("payment_history.reference_id")
    await db["bookings"].create_index("payment_history.session_id")

    yield db

    await client.drop_database(TEST_DATABASE_NAME)
    client.close()
