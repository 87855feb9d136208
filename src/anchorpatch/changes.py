from typing import Tuple

import structlog

from anchorpatch.document import fingerprint
from anchorpatch.errors import StaleDocument
from anchorpatch.storage import DocumentStore

logger = structlog.get_logger(__name__)


def ensure_fresh(document_id: str, expected: str, actual: str) -> None:
    if expected != actual:
        logger.warning(f"Stale patch rejected for '{document_id}': expected {expected[:12]}, found {actual[:12]}")
        raise StaleDocument(document_id, expected, actual)


class ChangeDetector:
    """
    Rejects edits built against content the caller no longer has.
    The fingerprint is recomputed from the stored text rather than trusted
    from the store, so out-of-band edits to the backing file are caught too.
    """

    def __init__(self, store: DocumentStore):
        self.store = store

    def current(self, document_id: str) -> Tuple[str, str]:
        content, _ = self.store.read(document_id)
        return content, fingerprint(content)

    def read_checked(self, document_id: str, expected_fingerprint: str) -> Tuple[str, str]:
        content, actual = self.current(document_id)
        ensure_fresh(document_id, expected_fingerprint, actual)
        return content, actual
