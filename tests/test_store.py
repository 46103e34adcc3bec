"""
Contact store tests.

Both backends implement the same interface, so the behavioural tests run
against each of them.

Run with: pytest tests/test_store.py -v
"""

import sqlite3
import sys
from concurrent.futures import ThreadPoolExecutor

import pytest

from db_models import LinkPrecedence
from exceptions import StoreError


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request, store, sqlite_store):
    return store if request.param == "memory" else sqlite_store


class TestContactStore:

    def test_create_assigns_increasing_ids(self, any_store):
        first = any_store.create(email="a@x.com", phone="111")
        second = any_store.create(email="b@x.com")

        assert second.id > first.id
        assert first.linkPrecedence == LinkPrecedence.PRIMARY
        assert first.linkedId is None
        assert first.createdAt == first.updatedAt
        assert second.phoneNumber is None

    def test_create_requires_email_or_phone(self, any_store):
        with pytest.raises(StoreError):
            any_store.create()

    def test_get_by_id_round_trips_fields(self, any_store):
        primary = any_store.create(email="a@x.com", phone="111")
        secondary = any_store.create(
            phone="222", linked_id=primary.id, precedence=LinkPrecedence.SECONDARY
        )

        loaded = any_store.get_by_id(secondary.id)

        assert loaded == secondary
        assert loaded.email is None
        assert loaded.linkedId == primary.id
        assert loaded.linkPrecedence == LinkPrecedence.SECONDARY

    def test_get_by_id_missing_returns_none(self, any_store):
        assert any_store.get_by_id(404) is None

    def test_update_demotes_and_refreshes_updated_at(self, any_store):
        older = any_store.create(email="a@x.com")
        newer = any_store.create(email="b@x.com")

        updated = any_store.update(newer.id, linked_id=older.id, precedence=LinkPrecedence.SECONDARY)

        assert updated.linkPrecedence == LinkPrecedence.SECONDARY
        assert updated.linkedId == older.id
        assert updated.createdAt == newer.createdAt
        assert updated.updatedAt > newer.updatedAt
        assert any_store.get_by_id(newer.id) == updated

    def test_update_missing_contact_raises(self, any_store):
        with pytest.raises(StoreError):
            any_store.update(404, linked_id=1)

    def test_find_matches_email_or_phone(self, any_store):
        by_email = any_store.create(email="a@x.com", phone="111")
        by_phone = any_store.create(email="b@x.com", phone="222")
        any_store.create(email="c@x.com", phone="333")

        found = any_store.find_by_email_or_phone(email="a@x.com", phone="222")

        assert [c.id for c in found] == [by_email.id, by_phone.id]

    def test_find_ignores_absent_fields(self, any_store):
        any_store.create(email="a@x.com")
        phone_only = any_store.create(phone="111")

        assert [c.id for c in any_store.find_by_email_or_phone(phone="111")] == [phone_only.id]
        assert any_store.find_by_email_or_phone() == []

    def test_find_is_case_sensitive(self, any_store):
        any_store.create(email="A@x.com")

        assert any_store.find_by_email_or_phone(email="a@x.com") == []

    def test_chain_members_primary_first(self, any_store):
        primary = any_store.create(email="a@x.com")
        other = any_store.create(email="z@x.com")
        s1 = any_store.create(email="b@x.com", linked_id=primary.id, precedence=LinkPrecedence.SECONDARY)
        s2 = any_store.create(phone="111", linked_id=primary.id, precedence=LinkPrecedence.SECONDARY)
        any_store.update(other.id, linked_id=primary.id, precedence=LinkPrecedence.SECONDARY)

        members = any_store.get_chain_members(primary.id)

        assert [c.id for c in members] == [primary.id, other.id, s1.id, s2.id]

    def test_chain_members_of_missing_root_is_empty(self, any_store):
        assert any_store.get_chain_members(404) == []


class TestInMemoryStore:

    def test_relinking_moves_index_entry(self, store):
        p1 = store.create(email="a@x.com")
        p2 = store.create(email="b@x.com")
        s = store.create(phone="111", linked_id=p2.id, precedence=LinkPrecedence.SECONDARY)

        store.update(s.id, linked_id=p1.id)

        assert [c.id for c in store.get_chain_members(p2.id)] == [p2.id]
        assert [c.id for c in store.get_chain_members(p1.id)] == [p1.id, s.id]

    def test_soft_deleted_contacts_are_hidden(self, store):
        contact = store.create(email="a@x.com")
        store._contacts[contact.id] = contact.model_copy(update={"deletedAt": contact.createdAt})

        assert store.get_by_id(contact.id) is None
        assert store.find_by_email_or_phone(email="a@x.com") == []
        assert store.all_contacts() == []


class TestSQLiteStore:

    def test_soft_deleted_contacts_are_hidden(self, sqlite_store):
        contact = sqlite_store.create(email="a@x.com")
        with sqlite3.connect(sqlite_store.db_name) as conn:
            conn.execute("UPDATE Contact SET deletedAt = createdAt WHERE id = ?", (contact.id,))

        assert sqlite_store.get_by_id(contact.id) is None
        assert sqlite_store.find_by_email_or_phone(email="a@x.com") == []

    def test_indexes_exist(self, sqlite_store):
        with sqlite3.connect(sqlite_store.db_name) as conn:
            names = {row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'index'")}

        assert {"idx_contact_email", "idx_contact_phone", "idx_contact_linked"} <= names

    def test_sqlite_errors_become_store_errors(self, sqlite_store):
        with sqlite3.connect(sqlite_store.db_name) as conn:
            conn.execute("DROP TABLE Contact")

        with pytest.raises(StoreError):
            sqlite_store.find_by_email_or_phone(email="a@x.com")
        with pytest.raises(StoreError):
            sqlite_store.create(email="a@x.com")

    def test_reopening_keeps_contacts(self, sqlite_store, clock):
        from db_setup import SQLiteContactStore

        contact = sqlite_store.create(email="a@x.com", phone="111")
        reopened = SQLiteContactStore(sqlite_store.db_name, clock=clock)

        assert reopened.get_by_id(contact.id) == contact


class TestInMemoryStoreConcurrency:

    def test_concurrent_identify_calls_keep_every_contact(self, store):
        from db_models import IdentifyRequest
        from reconciliation import IdentityReconciler

        reconciler = IdentityReconciler(store)
        workers, calls = 16, 50

        def run(worker):
            for n in range(calls):
                reconciler.identify(IdentifyRequest(
                    email=f"w{worker}-{n}@x.com", phoneNumber=f"{worker}{n:04d}"
                ))

        interval = sys.getswitchinterval()
        sys.setswitchinterval(1e-6)
        try:
            with ThreadPoolExecutor(max_workers=workers) as pool:
                list(pool.map(run, range(workers)))
        finally:
            sys.setswitchinterval(interval)

        contacts = store.all_contacts()
        assert len(contacts) == workers * calls
        assert len({c.id for c in contacts}) == workers * calls
        assert all(c.linkPrecedence == LinkPrecedence.PRIMARY for c in contacts)
