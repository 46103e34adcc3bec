"""Pytest fixtures shared by the store, reconciliation and API tests."""

import os
from datetime import datetime, timedelta

import pytest

# settings are cached on first import of main
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("ENVIRONMENT", "test")

from contact_store import ContactStore, InMemoryContactStore  # noqa: E402
from db_models import IdentifyRequest, LinkPrecedence  # noqa: E402
from db_setup import SQLiteContactStore  # noqa: E402
from exceptions import StoreError  # noqa: E402
from reconciliation import IdentityReconciler  # noqa: E402


class TickingClock:
    """Returns a strictly increasing timestamp on every call."""

    def __init__(self, start=datetime(2023, 4, 1, 0, 0, 0), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        self.now += self.step
        return self.now


class FlakyStore(ContactStore):
    """Wraps a store, counts writes and fails once ``fail_after_writes`` is reached."""

    def __init__(self, inner: ContactStore, fail_after_writes=None):
        self.inner = inner
        self.fail_after_writes = fail_after_writes
        self.writes = 0
        self.reads = 0

    def _write(self):
        if self.fail_after_writes is not None and self.writes >= self.fail_after_writes:
            raise StoreError("simulated crash")
        self.writes += 1

    def create(self, email=None, phone=None, linked_id=None, precedence=LinkPrecedence.PRIMARY):
        self._write()
        return self.inner.create(email=email, phone=phone, linked_id=linked_id, precedence=precedence)

    def update(self, contact_id, linked_id=None, precedence=None):
        self._write()
        return self.inner.update(contact_id, linked_id=linked_id, precedence=precedence)

    def get_by_id(self, contact_id):
        self.reads += 1
        return self.inner.get_by_id(contact_id)

    def find_by_email_or_phone(self, email=None, phone=None):
        self.reads += 1
        return self.inner.find_by_email_or_phone(email=email, phone=phone)

    def get_chain_members(self, primary_id):
        self.reads += 1
        return self.inner.get_chain_members(primary_id)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def store(clock):
    return InMemoryContactStore(clock=clock)


@pytest.fixture
def sqlite_store(tmp_path, clock):
    return SQLiteContactStore(str(tmp_path / "contacts.db"), clock=clock)


@pytest.fixture
def reconciler(store):
    return IdentityReconciler(store)


@pytest.fixture
def identify(reconciler):
    """Run an identify call and return only the consolidated view."""

    def _identify(email=None, phone=None):
        return reconciler.identify(IdentifyRequest(email=email, phoneNumber=phone)).contact

    return _identify
