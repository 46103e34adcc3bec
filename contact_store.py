"""
Contact store interface and an in-memory implementation.

The reconciliation core only talks to ``ContactStore``. ``SQLiteContactStore``
in ``db_setup`` is the persistent backend; ``InMemoryContactStore`` keeps two
equality indexes (email, phone) plus a linkedId index in plain dicts and is
meant for single-node deployments and tests.
"""

import threading
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Callable, Dict, List, Optional, Set

from db_models import Contact, LinkPrecedence
from exceptions import StoreError


class ContactStore(ABC):

    @abstractmethod
    def create(
        self,
        email: Optional[str] = None,
        phone: Optional[str] = None,
        linked_id: Optional[int] = None,
        precedence: LinkPrecedence = LinkPrecedence.PRIMARY,
    ) -> Contact:
        """Insert a new contact and return it with its assigned id."""

    @abstractmethod
    def get_by_id(self, contact_id: int) -> Optional[Contact]:
        """Return the contact, or None when no live record has this id."""

    @abstractmethod
    def update(
        self,
        contact_id: int,
        linked_id: Optional[int] = None,
        precedence: Optional[LinkPrecedence] = None,
    ) -> Contact:
        """Set linkedId and/or linkPrecedence and refresh updatedAt."""

    @abstractmethod
    def find_by_email_or_phone(
        self, email: Optional[str] = None, phone: Optional[str] = None
    ) -> List[Contact]:
        """Contacts whose email equals ``email`` or whose phone equals ``phone``."""

    @abstractmethod
    def get_chain_members(self, primary_id: int) -> List[Contact]:
        """The record ``primary_id`` followed by every record linked to it."""


class InMemoryContactStore(ContactStore):
    """Dict-backed store; one lock guards the records and all three indexes."""

    def __init__(self, clock: Callable[[], datetime] = datetime.now):
        self._clock = clock
        self._lock = threading.RLock()
        self._contacts: Dict[int, Contact] = {}
        self._by_email: Dict[str, Set[int]] = {}
        self._by_phone: Dict[str, Set[int]] = {}
        self._by_linked: Dict[int, Set[int]] = {}
        self._next_id = 1

    def create(self, email=None, phone=None, linked_id=None, precedence=LinkPrecedence.PRIMARY):
        if email is None and phone is None:
            raise StoreError("Contact needs an email or a phone number")

        with self._lock:
            contact_id = self._next_id
            self._next_id += 1
            now = self._clock()
            contact = Contact(
                id=contact_id,
                email=email,
                phoneNumber=phone,
                linkedId=linked_id,
                linkPrecedence=precedence,
                createdAt=now,
                updatedAt=now,
            )

            self._contacts[contact_id] = contact
            if email is not None:
                self._by_email.setdefault(email, set()).add(contact_id)
            if phone is not None:
                self._by_phone.setdefault(phone, set()).add(contact_id)
            if linked_id is not None:
                self._by_linked.setdefault(linked_id, set()).add(contact_id)
        return contact

    def get_by_id(self, contact_id):
        with self._lock:
            contact = self._contacts.get(contact_id)
        if contact is None or contact.deletedAt is not None:
            return None
        return contact

    def update(self, contact_id, linked_id=None, precedence=None):
        with self._lock:
            current = self._contacts.get(contact_id)
            if current is None:
                raise StoreError(f"Contact {contact_id} does not exist")

            changes = {"updatedAt": self._clock()}
            if linked_id is not None:
                changes["linkedId"] = linked_id
            if precedence is not None:
                changes["linkPrecedence"] = precedence
            updated = current.model_copy(update=changes)

            if current.linkedId != updated.linkedId:
                if current.linkedId is not None:
                    self._by_linked[current.linkedId].discard(contact_id)
                self._by_linked.setdefault(updated.linkedId, set()).add(contact_id)

            self._contacts[contact_id] = updated
        return updated

    def find_by_email_or_phone(self, email=None, phone=None):
        with self._lock:
            ids = set()
            if email is not None:
                ids |= self._by_email.get(email, set())
            if phone is not None:
                ids |= self._by_phone.get(phone, set())
            return self._live(ids)

    def get_chain_members(self, primary_id):
        with self._lock:
            primary = self.get_by_id(primary_id)
            if primary is None:
                return []
            return [primary] + self._live(set(self._by_linked.get(primary_id, ())))

    def all_contacts(self) -> List[Contact]:
        with self._lock:
            return self._live(list(self._contacts))

    def _live(self, ids) -> List[Contact]:
        # callers hold the lock and pass a copy of the index
        contacts = [self._contacts[i] for i in ids if self._contacts[i].deletedAt is None]
        contacts.sort(key=lambda c: c.order_key)
        return contacts
