import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import structlog

from anchorpatch.errors import RollbackRejected

logger = structlog.get_logger(__name__)


def new_operation_id() -> str:
    return f"op_{uuid.uuid4().hex}"


@dataclass(frozen=True)
class Snapshot:
    operation_id: str
    document_id: str
    content_before: str
    fingerprint_before: str
    fingerprint_after: str
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    # PatchTransactions that produced this state; moved to rolled_back on rollback
    transactions: Tuple[Any, ...] = field(default=(), repr=False, compare=False)


class RollbackManager:
    """
    Keeps the pre-image of the last committed operation per document.

    This is last-writer-only: a new operation on a document supersedes the
    previous snapshot, so only the most recent operation can be rolled back.
    Memory is bounded by one snapshot per document.
    """

    def __init__(self):
        self._by_document: Dict[str, Snapshot] = {}
        self._lock = threading.Lock()

    def record(self, snapshot: Snapshot) -> None:
        with self._lock:
            previous = self._by_document.get(snapshot.document_id)
            if previous is not None:
                logger.debug(f"Snapshot {previous.operation_id} superseded by {snapshot.operation_id}")
            self._by_document[snapshot.document_id] = snapshot

    def latest(self, document_id: str) -> Optional[Snapshot]:
        with self._lock:
            return self._by_document.get(document_id)

    def find(self, operation_id: str) -> Snapshot:
        """Returns the live snapshot for an operation, or raises RollbackRejected."""
        with self._lock:
            for snapshot in self._by_document.values():
                if snapshot.operation_id == operation_id:
                    return snapshot
        raise RollbackRejected(
            f"Operation '{operation_id}' cannot be rolled back: it is unknown, already "
            "committed, or superseded by a later operation on the same document",
            ["Only the most recent operation on a document can be rolled back"],
        )

    def commit(self, operation_id: str) -> bool:
        """Discards the snapshot. Returns False if there was nothing to discard."""
        with self._lock:
            for document_id, snapshot in list(self._by_document.items()):
                if snapshot.operation_id == operation_id:
                    del self._by_document[document_id]
                    return True
        return False

    def discard(self, document_id: str) -> None:
        with self._lock:
            self._by_document.pop(document_id, None)

    def __len__(self) -> int:
        return len(self._by_document)
