"""MongoDB access for the storefront.

All reads and writes go through :class:`MongoStore` so the checkout flow can
run them inside one unit of work. ``transaction()`` uses a real multi-document
transaction when the deployment supports it (replica set / Atlas) and falls
back to a :class:`CompensationLog` on standalone servers.
"""

import logging
from contextlib import contextmanager
from typing import Dict, Iterator, List, Optional, Sequence, Tuple, Union

from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.client_session import ClientSession
from pymongo.errors import DuplicateKeyError, PyMongoError

from .errors import Conflict

logger = logging.getLogger(__name__)

SortSpec = Optional[Sequence[Tuple[str, int]]]


class CompensationLog:
    """Journal of writes made while no native transaction is available.

    Each entry keeps the document as it looked before the write (``None`` for
    inserts) and a guard describing what this unit wrote. :meth:`rollback`
    only undoes a write while the stored document still matches its guard, so
    a newer write by someone else is never overwritten.
    """

    def __init__(self):
        self._entries: List[Tuple[str, object, Optional[Dict], Dict]] = []

    def __len__(self):
        return len(self._entries)

    def record(
        self,
        collection: str,
        document_id,
        previous: Optional[Dict],
        guard: Optional[Dict] = None,
    ):
        self._entries.append((collection, document_id, previous, guard or {}))

    def rollback(self, db) -> int:
        """Undo the journal newest first and return how many entries failed."""
        failures = 0
        for collection, document_id, previous, guard in reversed(self._entries):
            query = {"_id": document_id, **guard}
            try:
                if previous is None:
                    undone = db[collection].delete_one(query).deleted_count
                else:
                    undone = db[collection].replace_one(query, previous).matched_count
            except PyMongoError as exc:
                failures += 1
                logger.error(
                    "Unable to undo write on %s/%s: %s", collection, document_id, exc
                )
                continue
            if not undone:
                failures += 1
                logger.error(
                    "Skipped undoing write on %s/%s: changed by another writer",
                    collection,
                    document_id,
                )
        self._entries.clear()
        return failures


Session = Union[ClientSession, CompensationLog, None]


class MongoStore:
    UNIQUE_INDEXES = {
        "users": "email",
        "carts": "user_id",
        "coupons": "code",
        "categories": "name",
        "profiles": "user_id",
    }

    def __init__(self, client, db, transactions: bool = True):
        self.client = client
        self.db = db
        self.transactions = transactions

    def ensure_indexes(self):
        for collection, field in self.UNIQUE_INDEXES.items():
            self.db[collection].create_index(field, unique=True)
        self.db["orders"].create_index([("user_id", ASCENDING), ("created_at", DESCENDING)])
        self.db["audit_logs"].create_index([("created_at", DESCENDING)])

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        if not self.transactions:
            journal = CompensationLog()
            try:
                yield journal
            except BaseException:
                if len(journal):
                    logger.warning("Rolling back %d write(s) by compensation", len(journal))
                    journal.rollback(self.db)
                raise
            return

        with self.client.start_session() as session:
            # start_transaction() commits on clean exit and aborts on exceptions.
            with session.start_transaction():
                yield session

    # --- reads ---

    def find_one(self, collection: str, query: Dict, session: Session = None):
        return self.db[collection].find_one(query, **self._session_kwargs(session))

    def find(
        self,
        collection: str,
        query: Optional[Dict] = None,
        sort: SortSpec = None,
        skip: int = 0,
        limit: int = 0,
    ) -> List[Dict]:
        cursor = self.db[collection].find(query or {})
        if sort:
            cursor = cursor.sort(list(sort))
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return list(cursor)

    def count(self, collection: str, query: Optional[Dict] = None) -> int:
        return self.db[collection].count_documents(query or {})

    # --- writes ---

    def insert_one(self, collection: str, document: Dict, session: Session = None):
        try:
            result = self.db[collection].insert_one(
                document, **self._session_kwargs(session)
            )
        except DuplicateKeyError as exc:
            raise Conflict(self._duplicate_message(collection)) from exc
        document["_id"] = result.inserted_id
        self._journal(session, collection, result.inserted_id, None, document)
        return result.inserted_id

    def replace_one(
        self, collection: str, query: Dict, document: Dict, session: Session = None
    ) -> bool:
        previous = self._previous(collection, query, session)
        try:
            result = self.db[collection].replace_one(
                query, document, **self._session_kwargs(session)
            )
        except DuplicateKeyError as exc:
            raise Conflict(self._duplicate_message(collection)) from exc
        if result.matched_count and previous is not None:
            self._journal(session, collection, previous["_id"], previous, document)
        return bool(result.matched_count)

    def find_one_and_update(
        self, collection: str, query: Dict, update: Dict, session: Session = None
    ):
        previous = self._previous(collection, query, session)
        document = self.db[collection].find_one_and_update(
            query,
            update,
            return_document=ReturnDocument.AFTER,
            **self._session_kwargs(session),
        )
        if document is not None and previous is not None:
            self._journal(session, collection, previous["_id"], previous, document)
        return document

    def delete_one(self, collection: str, query: Dict) -> Optional[Dict]:
        return self.db[collection].find_one_and_delete(query)

    # --- internals ---

    @staticmethod
    def _session_kwargs(session: Session) -> Dict:
        if isinstance(session, ClientSession):
            return {"session": session}
        return {}

    def _previous(self, collection: str, query: Dict, session: Session):
        if isinstance(session, CompensationLog):
            return self.db[collection].find_one(query)
        return None

    @staticmethod
    def _journal(session: Session, collection: str, document_id, previous, written: Dict):
        if isinstance(session, CompensationLog):
            # Versioned documents are only undone while still at the written version.
            guard = {"version": written["version"]} if "version" in written else None
            session.record(collection, document_id, previous, guard)

    def _duplicate_message(self, collection: str) -> str:
        field = self.UNIQUE_INDEXES.get(collection, "key")
        return f"That {field} is already in use."
