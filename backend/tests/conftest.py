"""
Pytest configuration and shared test helpers for backend tests.
"""
import os

# Skip heavy server startup (MongoDB, scheduler) when running under pytest.
os.environ.setdefault("PYTEST_RUNNING", "1")

import copy
import itertools
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
from typing import Any, Dict, List, Optional
from unittest.mock import patch

import pytest
from pymongo.errors import DuplicateKeyError

# Shared TestClient fixture so tests can use in-process requests without a running server.
from fastapi.testclient import TestClient
from server import app

from auth import create_access_token
from models import SubscriptionStatus
from services.billing_errors import BillingProviderError
from services.payment_provider import (
    CreatedSubscription,
    PaymentProvider,
    PaymentSourceResult,
    ProviderPayment,
    SubscriptionStatusResult,
    WebhookEvent,
)
from services.plan_catalog import initial_billing_fields

ORG_ID = "org-test-001"
USER_ID = "user-test-001"

# Every module reaches MongoDB through the shared `database` singleton
DB_PATCH_TARGET = "database.database.get_db"


# =============================================================================
# In-memory Mongo-like store
# =============================================================================

_MISSING = object()


def _get_field(doc: Dict[str, Any], key: str):
    value: Any = doc
    for part in key.split("."):
        if not isinstance(value, dict) or part not in value:
            return _MISSING
        value = value[part]
    return value


def _compare(value, op, operand) -> bool:
    if value is _MISSING or value is None:
        return False
    try:
        if op == "$lt":
            return value < operand
        if op == "$lte":
            return value <= operand
        if op == "$gt":
            return value > operand
        return value >= operand
    except TypeError:
        return False


def _match_condition(value, condition) -> bool:
    if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
        for op, operand in condition.items():
            if op == "$in":
                present = None if value is _MISSING else value
                if present not in operand:
                    return False
            elif op == "$nin":
                present = None if value is _MISSING else value
                if present in operand:
                    return False
            elif op == "$ne":
                present = None if value is _MISSING else value
                if present == operand:
                    return False
            elif op == "$exists":
                if (value is not _MISSING) != bool(operand):
                    return False
            elif op in ("$lt", "$lte", "$gt", "$gte"):
                if not _compare(value, op, operand):
                    return False
            else:
                raise NotImplementedError(f"Unsupported query operator {op}")
        return True
    if condition is None:
        return value is _MISSING or value is None
    return value is not _MISSING and value == condition


def matches(doc: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$or":
            if not any(matches(doc, sub) for sub in condition):
                return False
        elif key == "$and":
            if not all(matches(doc, sub) for sub in condition):
                return False
        elif not _match_condition(_get_field(doc, key), condition):
            return False
    return True


def _project(doc: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    out = copy.deepcopy(doc)
    if not projection:
        return out
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        out = {k: out[k] for k in included if k in out}
    else:
        for k, v in projection.items():
            if not v:
                out.pop(k, None)
    if projection.get("_id") == 0:
        out.pop("_id", None)
    return out


class InMemoryCursor:
    def __init__(self, docs: List[Dict[str, Any]]):
        self._docs = docs

    def sort(self, key, direction=1):
        if isinstance(key, list):
            for field, dir_ in reversed(key):
                self._sort_one(field, dir_)
        else:
            self._sort_one(key, direction)
        return self

    def _sort_one(self, field, direction):
        def sort_key(doc):
            value = _get_field(doc, field)
            if value is _MISSING or value is None:
                return (0, "")
            return (1, value)
        self._docs.sort(key=sort_key, reverse=direction == -1)

    def limit(self, n):
        if n:
            self._docs = self._docs[:n]
        return self

    async def to_list(self, length=None):
        return self._docs if length is None else self._docs[:length]


class InMemoryCollection:
    """Subset of the motor collection API used by the billing code."""

    def __init__(self, name: str):
        self.name = name
        self.docs: List[Dict[str, Any]] = []
        self.unique_keys: List[str] = []
        self.fail_next_writes = 0
        self.write_count = 0
        self._ids = itertools.count(1)

    # -- helpers -----------------------------------------------------------

    def _maybe_fail(self):
        from pymongo.errors import AutoReconnect
        if self.fail_next_writes:
            self.fail_next_writes -= 1
            raise AutoReconnect(f"simulated failure on {self.name}")

    def _check_unique(self, candidate: Dict[str, Any], ignore=None):
        for key in self.unique_keys:
            value = _get_field(candidate, key)
            if value is _MISSING or value is None:
                continue
            for other in self.docs:
                if other is ignore:
                    continue
                if _get_field(other, key) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {key}")

    @staticmethod
    def _apply_update(doc: Dict[str, Any], update: Dict[str, Any], inserting: bool):
        for key, value in (update.get("$set") or {}).items():
            doc[key] = copy.deepcopy(value)
        if inserting:
            for key, value in (update.get("$setOnInsert") or {}).items():
                doc[key] = copy.deepcopy(value)
        for key, value in (update.get("$inc") or {}).items():
            doc[key] = (doc.get(key) or 0) + value
        for key in (update.get("$unset") or {}):
            doc.pop(key, None)

    # -- motor API ---------------------------------------------------------

    async def create_index(self, keys, unique=False, **kwargs):
        if unique and isinstance(keys, str):
            self.unique_keys.append(keys)
        return keys

    async def insert_one(self, document):
        self._maybe_fail()
        doc = copy.deepcopy(document)
        doc.setdefault("_id", next(self._ids))
        self._check_unique(doc)
        self.docs.append(doc)
        self.write_count += 1
        document.setdefault("_id", doc["_id"])
        return SimpleNamespace(inserted_id=doc["_id"])

    async def find_one(self, query=None, projection=None, sort=None):
        docs = [d for d in self.docs if matches(d, query)]
        if sort:
            docs = InMemoryCursor(docs).sort(sort)._docs
        return _project(docs[0], projection) if docs else None

    def find(self, query=None, projection=None):
        return InMemoryCursor([_project(d, projection) for d in self.docs if matches(d, query)])

    async def count_documents(self, query=None):
        return sum(1 for d in self.docs if matches(d, query))

    async def update_one(self, query, update, upsert=False):
        self._maybe_fail()
        for doc in self.docs:
            if matches(doc, query):
                before = copy.deepcopy(doc)
                candidate = copy.deepcopy(doc)
                self._apply_update(candidate, update, inserting=False)
                self._check_unique(candidate, ignore=doc)
                doc.clear()
                doc.update(candidate)
                modified = int(doc != before)
                self.write_count += modified
                return SimpleNamespace(matched_count=1, modified_count=modified, upserted_id=None)

        if not upsert:
            return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=None)

        doc = {k: copy.deepcopy(v) for k, v in query.items() if not k.startswith("$") and not isinstance(v, dict)}
        self._apply_update(doc, update, inserting=True)
        doc["_id"] = next(self._ids)
        self._check_unique(doc)
        self.docs.append(doc)
        self.write_count += 1
        return SimpleNamespace(matched_count=0, modified_count=0, upserted_id=doc["_id"])

    async def update_many(self, query, update):
        self._maybe_fail()
        matched = modified = 0
        for doc in self.docs:
            if matches(doc, query):
                matched += 1
                before = copy.deepcopy(doc)
                self._apply_update(doc, update, inserting=False)
                modified += int(doc != before)
        self.write_count += modified
        return SimpleNamespace(matched_count=matched, modified_count=modified)


class InMemoryDB:
    UNIQUE_INDEXES = {
        "organizations": ["organization_id"],
        "subscriptions": ["subscription_id"],
        "invoices": ["invoice_id", "provider_payment_id"],
        "payment_methods": ["payment_method_id"],
    }

    def __init__(self):
        self._collections: Dict[str, InMemoryCollection] = {}
        for name, keys in self.UNIQUE_INDEXES.items():
            self[name].unique_keys.extend(keys)

    def __getitem__(self, name) -> InMemoryCollection:
        if name not in self._collections:
            self._collections[name] = InMemoryCollection(name)
        return self._collections[name]

    def __getattr__(self, name) -> InMemoryCollection:
        if name.startswith("_"):
            raise AttributeError(name)
        return self[name]

    def total_writes(self) -> int:
        return sum(c.write_count for c in self._collections.values())

    def seed_org(self, organization_id=ORG_ID, now=None, **overrides) -> Dict[str, Any]:
        now = now or datetime.now(timezone.utc)
        doc = {
            "organization_id": organization_id,
            "name": "Inmobiliaria Test",
            **initial_billing_fields(now),
            "conversations_used_this_month": 0,
            "updated_at": now.isoformat(),
            **overrides,
        }
        doc["_id"] = next(self.organizations._ids)
        self.organizations.docs.append(doc)
        return doc

    def seed_subscription(self, organization_id=ORG_ID, **fields) -> Dict[str, Any]:
        now = datetime.now(timezone.utc)
        doc = {
            "subscription_id": f"sub-{len(self.subscriptions.docs) + 1}",
            "organization_id": organization_id,
            "provider": "fake",
            "provider_subscription_id": f"pre-{len(self.subscriptions.docs) + 1}",
            "plan_tier": "basic",
            "amount_cents": 32_000_000,
            "currency": "COP",
            "status": SubscriptionStatus.AUTHORIZED.value,
            "trial_ends_at": None,
            "current_period_start": now.isoformat(),
            "current_period_end": (now + timedelta(days=30)).isoformat(),
            "cancel_at_period_end": False,
            "retry_count": 0,
            "created_at": now.isoformat(),
            "updated_at": now.isoformat(),
        }
        doc.update(fields)
        doc["_id"] = next(self.subscriptions._ids)
        self.subscriptions.docs.append(doc)
        return doc

    def get(self, collection: str, **query) -> Optional[Dict[str, Any]]:
        for doc in self[collection].docs:
            if matches(doc, query):
                return doc
        return None


# =============================================================================
# Fake payment provider
# =============================================================================

class FakeProvider(PaymentProvider):
    """Records every call; remote state is scripted through `subscriptions` and `payments`."""

    name = "fake"
    currency = "COP"

    def __init__(self):
        self.calls: List[tuple] = []
        self.subscriptions: Dict[str, str] = {}
        self.payments: Dict[str, ProviderPayment] = {}
        self.fail_on: Dict[str, BillingProviderError] = {}
        self.valid_signature = "valid"
        self._ids = itertools.count(1)

    def _maybe_fail(self, operation):
        error = self.fail_on.get(operation)
        if error is not None:
            raise error

    async def create_payment_source(self, organization_id, last_four, brand, customer_email=None):
        self.calls.append(("create_payment_source", organization_id, last_four, brand))
        return PaymentSourceResult(provider_payment_method_id=f"card-{next(self._ids)}", brand=brand.lower(), last_four=last_four)

    async def create_subscription(self, payer_email, reason, amount_cents, currency, external_reference,
                                  back_url, free_trial_days=0, card_token_id=None):
        self._maybe_fail("create_subscription")
        provider_id = f"pre-remote-{next(self._ids)}"
        status = "authorized" if card_token_id else "pending"
        self.subscriptions[provider_id] = status
        self.calls.append(("create_subscription", {
            "payer_email": payer_email,
            "reason": reason,
            "amount_cents": amount_cents,
            "currency": currency,
            "external_reference": external_reference,
            "back_url": back_url,
            "free_trial_days": free_trial_days,
            "card_token_id": card_token_id,
            "provider_subscription_id": provider_id,
        }))
        return CreatedSubscription(
            provider_subscription_id=provider_id,
            status=SubscriptionStatus(status),
            init_point=f"https://checkout.example/{provider_id}",
        )

    async def update_subscription(self, provider_subscription_id, amount_cents, currency, reason=None):
        self._maybe_fail("update_subscription")
        self.calls.append(("update_subscription", provider_subscription_id, amount_cents, currency))

    async def cancel_subscription(self, provider_subscription_id):
        self._maybe_fail("cancel_subscription")
        self.calls.append(("cancel_subscription", provider_subscription_id))
        self.subscriptions[provider_subscription_id] = "cancelled"

    async def get_subscription_status(self, provider_subscription_id):
        self._maybe_fail("get_subscription_status")
        self.calls.append(("get_subscription_status", provider_subscription_id))
        raw = self.subscriptions.get(provider_subscription_id, "pending")
        return SubscriptionStatusResult(
            provider_subscription_id=provider_subscription_id,
            status=SubscriptionStatus(raw),
            raw_status=raw,
        )

    async def get_payment(self, provider_payment_id):
        self._maybe_fail("get_payment")
        self.calls.append(("get_payment", provider_payment_id))
        return self.payments[provider_payment_id]

    def verify_webhook_signature(self, raw_body, signature, request_id):
        return signature == self.valid_signature

    def parse_webhook_event(self, body):
        return WebhookEvent(type=body.get("type", ""), resource_id=str((body.get("data") or {}).get("id", "")), raw=body)

    def calls_named(self, name):
        return [c for c in self.calls if c[0] == name]

    def add_payment(self, payment_id, status="approved", organization_id=ORG_ID, provider_subscription_id=None,
                    amount_cents=32_000_000, status_detail=None):
        self.payments[payment_id] = ProviderPayment(
            provider_payment_id=payment_id,
            status=status,
            amount_cents=amount_cents,
            currency="COP",
            status_detail=status_detail,
            external_reference=organization_id,
            provider_subscription_id=provider_subscription_id,
            date_approved=datetime.now(timezone.utc).isoformat() if status == "approved" else None,
        )


# =============================================================================
# Fixtures
# =============================================================================

@pytest.fixture
def client():
    """Return a TestClient for the main FastAPI app (server:app). Use for unit-style API tests."""
    return TestClient(app)


@pytest.fixture
def fake_db():
    db = InMemoryDB()
    with patch(DB_PATCH_TARGET, return_value=db):
        yield db


@pytest.fixture
def fake_provider():
    provider = FakeProvider()
    with patch("services.subscription_engine.get_payment_provider", return_value=provider), \
         patch("routes.billing.get_payment_provider", return_value=provider):
        yield provider


@pytest.fixture
def engine(fake_provider):
    from services.subscription_engine import SubscriptionEngine
    return SubscriptionEngine(provider=fake_provider)


@pytest.fixture
def no_backoff():
    with patch("services.subscription_engine.LOCAL_WRITE_BACKOFF_SECONDS", [0, 0]):
        yield


def auth_headers(organization_id=ORG_ID, role="ROLE_ORG_ADMIN", user_id=USER_ID) -> Dict[str, str]:
    payload = {"user_id": user_id, "role": role}
    if organization_id:
        payload["organization_id"] = organization_id
    return {"Authorization": f"Bearer {create_access_token(payload)}"}
