# binary_mlm/store/document_store.py
"""
Key-path document store on top of SQLAlchemy.

Documents live at paths with an even number of segments
("tenants/acme/users/u1"), collections at odd ones ("tenants/acme/users").
Transactions are optimistic: every document read inside one is
version-checked when the writes are committed, and the whole function is
re-run when another writer got there first.
"""
import copy
import logging
import operator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

import config
from models import Document
from binary_mlm.errors import (
    DocumentExists, DocumentNotFound, StoreError, TransactionConflict
)
from binary_mlm.utils.numbers import toNumber
from binary_mlm.utils.time_machine import parseTimestamp, toTimestamp

logger = logging.getLogger(__name__)

Filter = Tuple[str, str, Any]

OPERATORS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda actual, expected: actual in expected,
}


class _WriteConflict(Exception):
    """Compare-and-set lost against a concurrent writer."""


def splitPath(path: str) -> Tuple[str, str]:
    """Document path -> (collection path, document id)."""
    segments = path.strip("/").split("/")
    if len(segments) < 2 or len(segments) % 2 != 0 or not all(segments):
        raise ValueError(f"Invalid document path: {path}")
    return "/".join(segments[:-1]), segments[-1]


def encode(value: Any) -> Any:
    """Convert a python value into what the JSON column stores."""
    if isinstance(value, datetime):
        return toTimestamp(value)
    if isinstance(value, Decimal):
        return toNumber(value)
    if isinstance(value, dict):
        return {str(k): encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [encode(v) for v in value]
    return value


def deepMerge(existing: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(existing)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deepMerge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def _matches(data: Dict[str, Any], field: str, op: str, expected: Any) -> bool:
    if field not in data:
        return False

    actual = data[field]
    if isinstance(expected, datetime):
        try:
            actual = parseTimestamp(actual)
        except (TypeError, ValueError):
            return False
        if actual is None:
            return False
        if expected.tzinfo is None:
            expected = expected.replace(tzinfo=timezone.utc)

    try:
        return OPERATORS[op](actual, expected)
    except TypeError:
        return False


@dataclass
class DocumentSnapshot:
    path: str
    id: str
    data: Dict[str, Any]
    version: int

    def get(self, key: str, default: Any = None) -> Any:
        return self.data.get(key, default)


class Transaction:
    """Reads go to the store immediately, writes are buffered until commit."""

    def __init__(self, store: "DocumentStore"):
        self._store = store
        self._reads: Dict[str, Optional[DocumentSnapshot]] = {}
        self._writes: List[Tuple[str, str, Optional[Dict[str, Any]], bool]] = []

    def get(self, path: str) -> Optional[DocumentSnapshot]:
        if self._writes:
            raise StoreError("Transaction reads must happen before writes")
        snapshot = self._store.getSnapshot(path)
        self._reads[path] = snapshot
        return snapshot

    def set(self, path: str, data: Dict[str, Any], merge: bool = False):
        splitPath(path)
        self._writes.append(("set", path, encode(data), merge))

    def update(self, path: str, data: Dict[str, Any]):
        splitPath(path)
        self._writes.append(("update", path, encode(data), False))

    def create(self, path: str, data: Dict[str, Any]):
        splitPath(path)
        self._writes.append(("create", path, encode(data), False))

    def delete(self, path: str):
        self._writes.append(("delete", path, None, False))


class DocumentStore:
    """Document database with per-path reads/writes, queries and CAS transactions."""

    def __init__(self, sessionFactory):
        self.sessionFactory = sessionFactory

    @contextmanager
    def _session(self):
        session = self.sessionFactory()
        try:
            yield session
            session.commit()
        except (StoreError, _WriteConflict):
            session.rollback()
            raise
        except IntegrityError as e:
            session.rollback()
            raise _WriteConflict(str(e)) from e
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Document store failure: {e}")
            raise StoreError(str(e)) from e
        finally:
            session.close()

    # region Reads

    def getSnapshot(self, path: str) -> Optional[DocumentSnapshot]:
        splitPath(path)
        with self._session() as session:
            row = session.get(Document, path)
            if row is None:
                return None
            return self._toSnapshot(row)

    def get(self, path: str) -> Optional[Dict[str, Any]]:
        """Document data or None when the document does not exist."""
        snapshot = self.getSnapshot(path)
        return snapshot.data if snapshot else None

    def exists(self, path: str) -> bool:
        return self.getSnapshot(path) is not None

    def query(
            self,
            collection: str,
            filters: Optional[Sequence[Filter]] = None,
            orderBy: Optional[str] = None,
            descending: bool = False,
            limit: Optional[int] = None
    ) -> List[DocumentSnapshot]:
        """
        Documents of one collection matching every filter.
        Results come back in document id order unless orderBy is given.
        """
        filters = list(filters or [])
        for _, op, _ in filters:
            if op not in OPERATORS:
                raise ValueError(f"Unsupported query operator: {op}")

        with self._session() as session:
            rows = session.query(Document).filter_by(
                collection=collection.strip("/")
            ).order_by(Document.docId).all()
            snapshots = [self._toSnapshot(row) for row in rows]

        result = [
            snapshot for snapshot in snapshots
            if all(_matches(snapshot.data, field, op, value) for field, op, value in filters)
        ]

        if orderBy:
            result.sort(
                key=lambda s: (s.data.get(orderBy) is None, s.data.get(orderBy)),
                reverse=descending
            )

        if limit is not None:
            result = result[:limit]

        return result

    # endregion

    # region Writes

    def set(self, path: str, data: Dict[str, Any], merge: bool = False):
        """Create or overwrite; with merge=True nested maps are merged into the existing document."""
        self._write("set", path, encode(data), merge)

    def update(self, path: str, data: Dict[str, Any]):
        """Replace top-level fields of an existing document."""
        self._write("update", path, encode(data), False)

    def create(self, path: str, data: Dict[str, Any]):
        """Create a document, failing with DocumentExists if it is already there."""
        try:
            with self._session() as session:
                self._applyWrite(session, "create", path, encode(data), False)
        except _WriteConflict as e:
            raise DocumentExists(path) from e

    def delete(self, path: str):
        self._write("delete", path, None, False)

    def _write(self, op: str, path: str, data: Optional[Dict[str, Any]], merge: bool):
        # An insert racing another insert of the same path is retried as an overwrite
        for _ in range(2):
            try:
                with self._session() as session:
                    self._applyWrite(session, op, path, data, merge)
                return
            except _WriteConflict:
                logger.info(f"Concurrent insert of {path}, retrying write")
        raise TransactionConflict(f"Write to {path} kept conflicting")

    def deleteMany(self, paths: Iterable[str]) -> int:
        """Batch delete; returns the number of documents removed."""
        paths = list(paths)
        if not paths:
            return 0
        with self._session() as session:
            deleted = session.query(Document).filter(
                Document.path.in_(paths)
            ).delete(synchronize_session=False)
        return deleted

    # endregion

    # region Transactions

    def runTransaction(self, fn: Callable[[Transaction], Any], maxAttempts: Optional[int] = None) -> Any:
        """
        Run fn(transaction) and commit its writes atomically.
        fn is re-run from scratch when a document it read changed before commit.
        """
        attempts = maxAttempts or config.TRANSACTION_MAX_ATTEMPTS

        for attempt in range(1, attempts + 1):
            transaction = Transaction(self)
            result = fn(transaction)
            try:
                self._commit(transaction)
                return result
            except _WriteConflict:
                logger.info(f"Transaction conflict, attempt {attempt}/{attempts}")

        raise TransactionConflict(f"Transaction failed after {attempts} attempts")

    def _commit(self, transaction: Transaction):
        if not transaction._writes and not transaction._reads:
            return

        with self._session() as session:
            touched = set()

            for op, path, data, merge in transaction._writes:
                if path in transaction._reads and path not in touched:
                    self._applyCheckedWrite(session, op, path, data, merge, transaction._reads[path])
                else:
                    self._applyWrite(session, op, path, data, merge)
                touched.add(path)

            # Documents read but not written must not have moved either
            for path, snapshot in transaction._reads.items():
                if path in touched:
                    continue
                row = session.get(Document, path)
                currentVersion = row.version if row is not None else None
                expectedVersion = snapshot.version if snapshot is not None else None
                if currentVersion != expectedVersion:
                    raise _WriteConflict(path)

    # endregion

    # region Internals

    def _applyCheckedWrite(self, session, op, path, data, merge, snapshot: Optional[DocumentSnapshot]):
        """Write guarded by the version seen when the transaction read the document."""
        if snapshot is None:
            if op == "update":
                raise DocumentNotFound(path)
            if op == "delete":
                if session.get(Document, path) is not None:
                    raise _WriteConflict(path)
                return
            # Document was absent: the insert fails if someone created it meanwhile
            collection, docId = splitPath(path)
            session.add(Document(path=path, collection=collection, docId=docId, data=data, version=1))
            session.flush()
            return

        if op == "create":
            raise DocumentExists(path)

        query = session.query(Document).filter_by(path=path, version=snapshot.version)
        if op == "delete":
            changed = query.delete(synchronize_session=False)
        else:
            if op == "update" or merge:
                newData = deepMerge(snapshot.data, data) if merge else {**snapshot.data, **data}
            else:
                newData = data
            changed = query.update({
                "data": newData,
                "version": snapshot.version + 1,
                "updatedAt": datetime.now(timezone.utc),
            }, synchronize_session=False)

        if changed != 1:
            raise _WriteConflict(path)

    def _applyWrite(self, session, op, path, data, merge):
        collection, docId = splitPath(path)
        row = session.get(Document, path, populate_existing=True)

        if op == "delete":
            if row is not None:
                session.delete(row)
            session.flush()
            return

        if op == "create" and row is not None:
            raise DocumentExists(path)
        if op == "update" and row is None:
            raise DocumentNotFound(path)

        if row is None:
            session.add(Document(path=path, collection=collection, docId=docId, data=data, version=1))
        else:
            if op == "update":
                row.data = {**(row.data or {}), **data}
            elif merge:
                row.data = deepMerge(row.data or {}, data)
            else:
                row.data = data
            row.version = (row.version or 0) + 1
        session.flush()

    @staticmethod
    def _toSnapshot(row: Document) -> DocumentSnapshot:
        return DocumentSnapshot(
            path=row.path,
            id=row.docId,
            data=copy.deepcopy(row.data or {}),
            version=row.version
        )

    # endregion
