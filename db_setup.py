import logging
import sqlite3
from contextlib import closing
from datetime import datetime

from contact_store import ContactStore
from db_models import Contact, LinkPrecedence
from exceptions import StoreError

logger = logging.getLogger(__name__)

DB_NAME = "contacts.db"

SCHEMA = [
    '''
    CREATE TABLE IF NOT EXISTS Contact (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        phoneNumber TEXT,
        email TEXT,
        linkedId INTEGER,
        linkPrecedence TEXT CHECK(linkPrecedence IN ('secondary', 'primary')),
        createdAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        updatedAt DATETIME DEFAULT CURRENT_TIMESTAMP,
        deletedAt DATETIME,
        FOREIGN KEY (linkedId) REFERENCES Contact (id)
    )
    ''',
    "CREATE INDEX IF NOT EXISTS idx_contact_email ON Contact (email)",
    "CREATE INDEX IF NOT EXISTS idx_contact_phone ON Contact (phoneNumber)",
    "CREATE INDEX IF NOT EXISTS idx_contact_linked ON Contact (linkedId)",
]


def init_db(db_name: str = DB_NAME):
    with closing(sqlite3.connect(db_name)) as conn:
        with conn:
            for statement in SCHEMA:
                conn.execute(statement)
    logger.info("Contact table ready", extra={"db_name": db_name})


def get_db_connection(db_name: str = DB_NAME):
    conn = sqlite3.connect(db_name)
    conn.row_factory = sqlite3.Row
    return conn


def _timestamp(value: datetime) -> str:
    return value.isoformat(timespec="microseconds")


class SQLiteContactStore(ContactStore):
    """Contact store backed by a single SQLite file, one connection per call."""

    def __init__(self, db_name: str = DB_NAME, clock=datetime.now):
        self.db_name = db_name
        self._clock = clock
        init_db(db_name)

    def _query(self, query: str, params=()):
        try:
            with closing(get_db_connection(self.db_name)) as conn:
                rows = conn.execute(query, params).fetchall()
        except sqlite3.Error as exc:
            logger.error("Contact query failed", extra={"error": str(exc)})
            raise StoreError("Failed to read contacts") from exc
        return [Contact(**dict(row)) for row in rows]

    def create(self, email=None, phone=None, linked_id=None, precedence=LinkPrecedence.PRIMARY):
        if email is None and phone is None:
            raise StoreError("Contact needs an email or a phone number")

        now = _timestamp(self._clock())
        try:
            with closing(get_db_connection(self.db_name)) as conn:
                with conn:
                    cursor = conn.execute("""
                        INSERT INTO Contact (phoneNumber, email, linkedId, linkPrecedence, createdAt, updatedAt)
                        VALUES (?, ?, ?, ?, ?, ?)
                    """, (phone, email, linked_id, LinkPrecedence(precedence).value, now, now))
                    contact_id = cursor.lastrowid
        except sqlite3.Error as exc:
            logger.error("Failed to create contact", extra={"error": str(exc)})
            raise StoreError("Failed to create contact") from exc

        logger.debug("Contact created", extra={"contact_id": contact_id})
        return Contact(
            id=contact_id,
            email=email,
            phoneNumber=phone,
            linkedId=linked_id,
            linkPrecedence=precedence,
            createdAt=now,
            updatedAt=now,
        )

    def get_by_id(self, contact_id):
        rows = self._query(
            "SELECT * FROM Contact WHERE id = ? AND deletedAt IS NULL", (contact_id,)
        )
        return rows[0] if rows else None

    def update(self, contact_id, linked_id=None, precedence=None):
        assignments = ["updatedAt = ?"]
        params = [_timestamp(self._clock())]
        if linked_id is not None:
            assignments.append("linkedId = ?")
            params.append(linked_id)
        if precedence is not None:
            assignments.append("linkPrecedence = ?")
            params.append(LinkPrecedence(precedence).value)
        params.append(contact_id)

        try:
            with closing(get_db_connection(self.db_name)) as conn:
                with conn:
                    cursor = conn.execute(
                        f"UPDATE Contact SET {', '.join(assignments)} WHERE id = ?", params
                    )
                    updated = cursor.rowcount
        except sqlite3.Error as exc:
            logger.error("Failed to update contact", extra={"contact_id": contact_id, "error": str(exc)})
            raise StoreError("Failed to update contact") from exc

        if not updated:
            raise StoreError(f"Contact {contact_id} does not exist")

        logger.debug("Contact updated", extra={"contact_id": contact_id})
        return self.get_by_id(contact_id)

    def find_by_email_or_phone(self, email=None, phone=None):
        conditions = []
        params = []
        if email is not None:
            conditions.append("email = ?")
            params.append(email)
        if phone is not None:
            conditions.append("phoneNumber = ?")
            params.append(phone)
        if not conditions:
            return []

        return self._query(f"""
            SELECT * FROM Contact
            WHERE deletedAt IS NULL
            AND ({' OR '.join(conditions)})
            ORDER BY createdAt ASC, id ASC
        """, params)

    def get_chain_members(self, primary_id):
        primary = self.get_by_id(primary_id)
        if primary is None:
            return []

        secondaries = self._query("""
            SELECT * FROM Contact
            WHERE linkedId = ? AND deletedAt IS NULL
            ORDER BY createdAt ASC, id ASC
        """, (primary_id,))
        return [primary] + secondaries

    def all_contacts(self):
        return self._query(
            "SELECT * FROM Contact WHERE deletedAt IS NULL ORDER BY createdAt ASC, id ASC"
        )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    init_db()
