import threading
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import structlog

from anchorpatch.document import Document, parse
from anchorpatch.matching.matcher import MatchCandidate

logger = structlog.get_logger(__name__)

# Recent match results kept per fingerprint (one batch worth)
_MAX_MATCHES_PER_ENTRY = 32


@dataclass
class CacheEntry:
    document: Document
    matches: "OrderedDict[str, List[MatchCandidate]]" = field(default_factory=OrderedDict)


class MatchCache:
    """
    Parsed documents and recent match results, keyed by content fingerprint.

    An entry never changes meaning because its key is the content hash; when a
    document id is seen with a new fingerprint, the old fingerprint's entry is
    dropped as a whole. Dropping or disabling the cache only costs latency.
    """

    def __init__(self, max_entries: int = 64):
        self.max_entries = max_entries
        self._entries: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._current: Dict[str, str] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _observe(self, document_id: Optional[str], fp: str) -> None:
        if document_id is None:
            return
        previous = self._current.get(document_id)
        self._current[document_id] = fp
        # Another document id may still hold identical content
        if previous is not None and previous != fp and previous not in self._current.values():
            self._entries.pop(previous, None)
            logger.debug(f"Invalidated cache for '{document_id}' ({previous[:12]} -> {fp[:12]})")

    def _evict(self) -> None:
        while len(self._entries) > self.max_entries:
            fp, _ = self._entries.popitem(last=False)
            stale = [doc_id for doc_id, current in self._current.items() if current == fp]
            for doc_id in stale:
                del self._current[doc_id]

    def document(self, text: str, fp: str, document_id: Optional[str] = None) -> Tuple[Document, bool]:
        """Returns (parsed document, cache hit)."""
        with self._lock:
            self._observe(document_id, fp)
            entry = self._entries.get(fp)
            if entry is not None:
                self._entries.move_to_end(fp)
                self.hits += 1
                return entry.document, True
            self.misses += 1

        doc = parse(text)
        with self._lock:
            self._entries[fp] = CacheEntry(document=doc)
            self._entries.move_to_end(fp)
            self._evict()
        return doc, False

    def remember(self, document: Document) -> None:
        """Caches a document produced in memory (e.g. mid-batch)."""
        with self._lock:
            if document.fingerprint not in self._entries:
                self._entries[document.fingerprint] = CacheEntry(document=document)
                self._evict()

    def get_matches(self, fp: str, key: str) -> Optional[List[MatchCandidate]]:
        with self._lock:
            entry = self._entries.get(fp)
            if entry is None or key not in entry.matches:
                self.misses += 1
                return None
            self.hits += 1
            return list(entry.matches[key])

    def put_matches(self, fp: str, key: str, candidates: List[MatchCandidate]) -> None:
        with self._lock:
            entry = self._entries.get(fp)
            if entry is None:
                return
            entry.matches[key] = list(candidates)
            while len(entry.matches) > _MAX_MATCHES_PER_ENTRY:
                entry.matches.popitem(last=False)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._current.clear()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, fp: str) -> bool:
        return fp in self._entries
