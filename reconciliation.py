"""
Contact identity reconciliation.

An identify call runs four steps against a ``ContactStore``:

1. match: every record sharing the request's email or phone number
2. group: partition the matches by the primary their chain hangs off
3. decide: create a primary, attach a secondary, fold a newer chain into an
   older one, or do nothing
4. consolidate: reload the winning chain and build the response view

The store has no multi-record transactions, so every mutation is a single
idempotent record write. Steps are ordered so that a request abandoned between
any two writes leaves chains that are still one level deep, and repeating the
request converges on the same final state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Tuple

from contact_store import ContactStore
from db_models import (
    Contact,
    ContactCreated,
    ContactMerged,
    ContactRelinked,
    ContactResponse,
    DomainEvent,
    IdentifyRequest,
    LinkPrecedence,
)
from exceptions import IntegrityFault, InvalidRequest

logger = logging.getLogger(__name__)


@dataclass
class ChainGroup:
    """Matched records that share one primary."""

    root_id: int
    root_created_at: datetime
    members: List[Contact] = field(default_factory=list)
    # secondaries found between a member and the primary; their dependents need re-pointing
    stale_ids: List[int] = field(default_factory=list)

    @property
    def order_key(self) -> Tuple[datetime, int]:
        return (self.root_created_at, self.root_id)


@dataclass
class ReconciliationResult:
    contact: ContactResponse
    events: List[DomainEvent] = field(default_factory=list)


# ==================== MATCH ====================

def match_contacts(store: ContactStore, email: Optional[str], phone: Optional[str]) -> List[Contact]:
    if email is None and phone is None:
        raise InvalidRequest("Either email or phoneNumber must be provided")
    return store.find_by_email_or_phone(email=email, phone=phone)


def _integrity_fault(message: str, context: dict) -> IntegrityFault:
    logger.error(message, extra={"chain_context": context})
    return IntegrityFault(message, context)


# ==================== GROUP ====================

def _resolve_root(
    store: ContactStore, contact: Contact, known: Dict[int, Contact]
) -> Tuple[Contact, List[int]]:
    """Follow linkedId from ``contact`` up to its primary.

    Chains are one level deep when consistent. A longer path only appears when
    a concurrent merge demoted a primary after another request attached to it;
    the intermediate ids are returned so the caller can repair them.
    """
    stale = []
    seen = {contact.id}
    current = contact
    while not current.is_primary:
        parent_id = current.linkedId
        context = {"contact_id": contact.id, "path": sorted(seen), "linked_id": parent_id}
        if parent_id is None:
            raise _integrity_fault(f"Secondary contact {current.id} has no linkedId", context)
        if parent_id in seen:
            raise _integrity_fault(f"Contact {contact.id} is part of a link cycle", context)

        parent = known.get(parent_id)
        if parent is None:
            parent = store.get_by_id(parent_id)
        if parent is None:
            raise _integrity_fault(
                f"Contact {current.id} links to missing contact {parent_id}", context
            )
        known[parent.id] = parent

        if current.id != contact.id:
            stale.append(current.id)
        seen.add(parent_id)
        current = parent
    return current, stale


def group_by_chain(store: ContactStore, contacts: Iterable[Contact]) -> List[ChainGroup]:
    """Partition ``contacts`` by chain root, oldest root first."""
    contacts = list(contacts)
    known = {c.id: c for c in contacts}
    groups: Dict[int, ChainGroup] = {}

    for contact in contacts:
        root, stale = _resolve_root(store, contact, known)
        group = groups.get(root.id)
        if group is None:
            group = groups[root.id] = ChainGroup(root_id=root.id, root_created_at=root.createdAt)
        group.members.append(contact)
        for stale_id in stale:
            if stale_id not in group.stale_ids:
                group.stale_ids.append(stale_id)

    return sorted(groups.values(), key=lambda g: g.order_key)


# ==================== DECIDE ====================

def is_exact_match(members: Iterable[Contact], email: Optional[str], phone: Optional[str]) -> bool:
    """True if one record already carries every field the request supplies."""
    return any(
        (email is None or m.email == email) and (phone is None or m.phoneNumber == phone)
        for m in members
    )


def has_new_information(members: Iterable[Contact], email: Optional[str], phone: Optional[str]) -> bool:
    members = list(members)
    new_email = email is not None and all(m.email != email for m in members)
    new_phone = phone is not None and all(m.phoneNumber != phone for m in members)
    return new_email or new_phone


# ==================== CONSOLIDATE ====================

def _append_unique(values: List[str], value: Optional[str]):
    if value is not None and value not in values:
        values.append(value)


def consolidate(store: ContactStore, root_id: int) -> ContactResponse:
    members = store.get_chain_members(root_id)
    if not members:
        raise _integrity_fault(
            f"Primary contact {root_id} could not be reloaded", {"primary_contact_id": root_id}
        )

    primary = members[0]
    if not primary.is_primary:
        # a concurrent request demoted this root; the view is still well formed
        logger.warning(
            "Consolidating a chain whose root is no longer primary",
            extra={"primary_contact_id": root_id, "linked_id": primary.linkedId},
        )
    secondaries = sorted(members[1:], key=lambda c: c.order_key)

    emails: List[str] = []
    phone_numbers: List[str] = []
    for contact in [primary] + secondaries:
        _append_unique(emails, contact.email)
        _append_unique(phone_numbers, contact.phoneNumber)

    return ContactResponse(
        primaryContactId=primary.id,
        emails=emails,
        phoneNumbers=phone_numbers,
        secondaryContactIds=[c.id for c in secondaries],
    )


def find_integrity_violations(contacts: Iterable[Contact]) -> List[str]:
    """Describe every record that breaks the one-level primary/secondary shape."""
    contacts = list(contacts)
    by_id = {c.id: c for c in contacts}
    violations = []

    for contact in contacts:
        if contact.email is None and contact.phoneNumber is None:
            violations.append(f"contact {contact.id} has neither email nor phone")
        if contact.is_primary:
            if contact.linkedId is not None:
                violations.append(f"primary {contact.id} links to {contact.linkedId}")
            continue

        parent = by_id.get(contact.linkedId)
        if parent is None:
            violations.append(f"secondary {contact.id} links to missing {contact.linkedId}")
        elif not parent.is_primary:
            violations.append(f"secondary {contact.id} links to secondary {parent.id}")
        elif parent.order_key > contact.order_key:
            violations.append(f"secondary {contact.id} is older than its primary {parent.id}")

    return violations


# ==================== RECONCILER ====================

class IdentityReconciler:
    """Runs identify calls against a contact store.

    Each call returns the consolidated view plus the domain events it caused;
    publishing those events is left to the caller.
    """

    def __init__(self, store: ContactStore):
        self.store = store

    def identify(self, request: IdentifyRequest) -> ReconciliationResult:
        email = request.email or None
        phone = request.phoneNumber or None

        events: List[DomainEvent] = []
        matches = match_contacts(self.store, email, phone)
        groups = group_by_chain(self.store, matches)

        for group in groups:
            if group.stale_ids:
                self._repair_chain(group, events)

        if not groups:
            contact = self._create(email, phone, events)
            logger.info("Created new primary contact", extra={"contact_id": contact.id})
            root_id = contact.id

        elif len(groups) == 1:
            group = groups[0]
            root_id = group.root_id
            self._attach_if_new(group.members, root_id, email, phone, events)

        elif len(groups) == 2:
            older, newer = groups
            root_id = older.root_id
            self._merge_chains(older, newer, events)
            self._attach_if_new(older.members + newer.members, root_id, email, phone, events)

        else:
            root_id = groups[0].root_id
            logger.warning(
                "DegenerateMultiChain: request matched more than two chains",
                extra={
                    "primary_contact_id": root_id,
                    "chain_roots": [g.root_id for g in groups],
                },
            )

        contact_view = consolidate(self.store, root_id)
        logger.info(
            "Built consolidated contact response",
            extra={
                "primary_contact_id": contact_view.primaryContactId,
                "email_count": len(contact_view.emails),
                "phone_count": len(contact_view.phoneNumbers),
                "secondary_count": len(contact_view.secondaryContactIds),
            },
        )
        return ReconciliationResult(contact=contact_view, events=events)

    def _create(self, email, phone, events, linked_id=None) -> Contact:
        precedence = LinkPrecedence.PRIMARY if linked_id is None else LinkPrecedence.SECONDARY
        contact = self.store.create(email=email, phone=phone, linked_id=linked_id, precedence=precedence)
        events.append(ContactCreated(
            contactId=contact.id, linkPrecedence=contact.linkPrecedence, linkedId=contact.linkedId
        ))
        return contact

    def _attach_if_new(self, members, root_id, email, phone, events):
        if is_exact_match(members, email, phone):
            return
        if not has_new_information(members, email, phone):
            return
        contact = self._create(email, phone, events, linked_id=root_id)
        logger.info(
            "Created secondary contact", extra={"contact_id": contact.id, "linked_id": root_id}
        )

    def _merge_chains(self, older: ChainGroup, newer: ChainGroup, events):
        """Fold ``newer`` into ``older``.

        Secondaries are re-pointed before their root is demoted, so after each
        write every secondary still points at a primary.
        """
        logger.info(
            "Linking two primary contacts",
            extra={"primary_contact_id": older.root_id, "demoted_contact_id": newer.root_id},
        )
        relinked = []
        for member in self.store.get_chain_members(newer.root_id):
            if member.id == newer.root_id:
                continue
            self.store.update(member.id, linked_id=older.root_id)
            relinked.append(member.id)

        self.store.update(newer.root_id, linked_id=older.root_id, precedence=LinkPrecedence.SECONDARY)
        events.append(ContactMerged(
            primaryContactId=older.root_id,
            demotedContactId=newer.root_id,
            relinkedContactIds=relinked,
        ))

    def _repair_chain(self, group: ChainGroup, events):
        logger.warning(
            "Re-pointing contacts linked through a demoted primary",
            extra={"primary_contact_id": group.root_id, "stale_ids": group.stale_ids},
        )
        for stale_id in group.stale_ids:
            for member in self.store.get_chain_members(stale_id):
                if member.id == stale_id or member.linkedId != stale_id:
                    continue
                self.store.update(member.id, linked_id=group.root_id)
                events.append(ContactRelinked(
                    contactId=member.id, previousLinkedId=stale_id, linkedId=group.root_id
                ))
