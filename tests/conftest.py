"""Shared fixtures for the IPN webhook tests.

- InMemoryRecordStore: dict-backed RecordStore that records every call
- RecordingObserver: captures stage events instead of logging them
- notification payload factory with digests matching the test credentials
"""

import copy
import hashlib
import json
from typing import Any, Generator, Optional

import pytest
from fastapi.testclient import TestClient

from reservation_webhook.db import DuplicateRecord, StoreError
from reservation_webhook.settings import ProviderCredentials
from reservation_webhook.webhook import (
    ReservationTransitioner,
    SignatureVerifier,
    WebhookHandler,
    WebhookObserver,
)

TEST_API_KEY = "pk_test_4f1c2a"
TEST_API_SECRET = "sk_test_9b7e33"
TEST_REF = "R1"
FIXED_NOW = "2026-01-01T12:00:00+00:00"

PENDING_TABLE = "reservations_pending"
CONFIRMED_TABLE = "reservations"


def sha256_hex(value: str) -> str:
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


class InMemoryRecordStore:
    def __init__(self):
        self.key_columns = {PENDING_TABLE: "ref_command", CONFIRMED_TABLE: "payment_ref"}
        self.tables: dict[str, dict[Any, dict]] = {PENDING_TABLE: {}, CONFIRMED_TABLE: {}}
        self.calls: list[tuple[str, str]] = []
        self.failures: dict[str, Exception] = {}

    def _enter(self, op: str, table: str) -> None:
        self.calls.append((op, table))
        if op in self.failures:
            raise self.failures[op]

    def add_pending(self, ref_command: str, reservation_data: dict) -> None:
        self.tables[PENDING_TABLE][ref_command] = {
            "ref_command": ref_command,
            "reservation_data": reservation_data,
        }

    @property
    def mutations(self) -> list[tuple[str, str]]:
        return [c for c in self.calls if c[0] != "select"]

    async def select_by_key(self, table: str, key: str) -> Optional[dict]:
        self._enter("select", table)
        record = self.tables[table].get(key)
        return copy.deepcopy(record) if record is not None else None

    async def insert(self, table: str, record: dict) -> None:
        self._enter("insert", table)
        key = record.get(self.key_columns[table])
        if key in self.tables[table]:
            raise DuplicateRecord(f"duplicate key {key!r}")
        self.tables[table][key] = copy.deepcopy(dict(record))

    async def delete_by_key(self, table: str, key: str) -> None:
        self._enter("delete", table)
        self.tables[table].pop(key, None)


class RecordingObserver(WebhookObserver):
    def __init__(self):
        self.events: list[tuple[str, str, Optional[str]]] = []

    def record(self, stage, outcome, ref_command=None, **fields):
        self.events.append((stage, outcome, ref_command))


@pytest.fixture
def credentials() -> ProviderCredentials:
    return ProviderCredentials(api_key=TEST_API_KEY, api_secret=TEST_API_SECRET)


@pytest.fixture
def store() -> InMemoryRecordStore:
    return InMemoryRecordStore()


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def transitioner(store, observer) -> ReservationTransitioner:
    return ReservationTransitioner(
        store=store,
        observer=observer,
        pending_table=PENDING_TABLE,
        confirmed_table=CONFIRMED_TABLE,
        clock=lambda: FIXED_NOW,
    )


@pytest.fixture
def handler(credentials, transitioner, observer) -> WebhookHandler:
    return WebhookHandler(SignatureVerifier(credentials), transitioner, observer)


@pytest.fixture
def client(handler) -> Generator[TestClient, None, None]:
    from reservation_webhook.main import app, get_webhook_handler

    app.dependency_overrides[get_webhook_handler] = lambda: handler
    yield TestClient(app)
    app.dependency_overrides.clear()


def make_notification(
    ref_command: str = TEST_REF,
    event_type: str = "sale_complete",
    custom_field: Any = None,
    api_key: str = TEST_API_KEY,
    api_secret: str = TEST_API_SECRET,
    **overrides: Any,
) -> dict[str, Any]:
    """IPN body as the provider posts it (wire field names)."""
    if custom_field is None:
        custom_field = json.dumps({"ref_command": ref_command, "redirect_after_success": "https://example.com/ok"})
    payload = {
        "type_event": event_type,
        "client_phone": "221770000000",
        "payment_method": "Orange Money",
        "item_name": "Dakar - Saint-Louis",
        "item_price": "5000",
        "ref_command": ref_command,
        "command_name": "Reservation R1",
        "currency": "XOF",
        "env": "test",
        "custom_field": custom_field,
        "token": "tok_abc123",
        "api_key_sha256": sha256_hex(api_key),
        "api_secret_sha256": sha256_hex(api_secret),
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def notification() -> dict[str, Any]:
    return make_notification()
