import asyncio
import time
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

import structlog

from anchorpatch.applier import AppliedEdit, PatchState, PatchTransaction, apply_to_document
from anchorpatch.cache import MatchCache
from anchorpatch.changes import ChangeDetector
from anchorpatch.diff import preview_diff
from anchorpatch.document import Document, parse
from anchorpatch.errors import (
    AmbiguousMatch,
    AnchorNotFound,
    InvalidInput,
    PatchError,
    RollbackRejected,
    StaleDocument,
)
from anchorpatch.history import RollbackManager, Snapshot, new_operation_id
from anchorpatch.matching.matcher import ContextMatcher, MatchCandidate
from anchorpatch.matching.resolve import Ambiguous, Unique, resolve
from anchorpatch.matching.suggest import SuggestionEngine, excerpt
from anchorpatch.metrics import MetricsCollector, OperationRecord
from anchorpatch.models import (
    BatchOutcome,
    ContextPatch,
    EngineConfig,
    PatchConflict,
    PatchOutcome,
    decode_patch,
)
from anchorpatch.storage import DocumentStore
from anchorpatch.utils.text import is_blank

logger = structlog.get_logger(__name__)


def detect_conflicts(patches: Sequence[ContextPatch]) -> List[PatchConflict]:
    """
    Flags pairs of patches in one batch that share a non-blank context line.
    Such pairs are not errors (each patch sees the previous results) but they
    are the usual source of surprising batch outcomes.
    """
    conflicts = []
    contexts = [
        {line.strip() for line in [*p.before_context, *p.after_context] if not is_blank(line)} for p in patches
    ]
    for i in range(len(patches)):
        for j in range(i + 1, len(patches)):
            if contexts[i] & contexts[j]:
                conflicts.append(
                    PatchConflict(
                        patch_indices=[i, j],
                        description="Patches target overlapping content locations",
                        resolution_suggestions=[
                            "Add section_context for disambiguation",
                            "Use more specific before/after context",
                            "Apply patches sequentially instead of in batch",
                        ],
                    )
                )
    return conflicts


class PatchEngine:
    """
    Applies context patches to documents held by a DocumentStore.

    Operations on one document are serialized by a per-document lock held
    across resolving and applying; different documents proceed in parallel.
    Resolving runs in a worker thread and never touches the store, so cancelling
    it is always safe. Applying has no await points: it runs to `applied` or
    `failed` in one step and the store write is atomic.
    """

    def __init__(
        self,
        store: DocumentStore,
        config: Optional[EngineConfig] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self.config = config or EngineConfig()
        self.matcher = ContextMatcher(self.config)
        self.suggestions = SuggestionEngine(self.config)
        self.cache = MatchCache(self.config.cache_max_entries) if self.config.cache_enabled else None
        self.metrics = metrics or MetricsCollector()
        self.rollbacks = RollbackManager()
        self.detector = ChangeDetector(store)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}
        self._tier_order = {scorer.name: i for i, scorer in enumerate(self.matcher.tiers)}

    @asynccontextmanager
    async def _locked(self, document_id: str) -> AsyncIterator[None]:
        """Holds the document's lock. The lock is dropped once nobody holds or awaits it."""
        lock = self._locks.get(document_id)
        if lock is None:
            lock = self._locks[document_id] = asyncio.Lock()
        self._lock_users[document_id] = self._lock_users.get(document_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[document_id] -= 1
            if not self._lock_users[document_id]:
                del self._lock_users[document_id]
                del self._locks[document_id]

    # --- Reading ---

    async def read(self, document_id: str) -> Tuple[str, str]:
        """Returns (content, fingerprint) for a document."""
        return await asyncio.to_thread(self.detector.current, document_id)

    def _parse(self, document_id: str, content: str, fp: str) -> Tuple[Document, bool]:
        if self.cache is None:
            return parse(content), False
        return self.cache.document(content, fp, document_id)

    # --- Resolving ---

    def _match_key(self, patch: ContextPatch) -> str:
        return patch.model_dump_json(include={"operation", "section_context", "before_context", "after_context"})

    def _resolve(self, document: Document, patch: ContextPatch, tx: PatchTransaction) -> Tuple[MatchCandidate, bool]:
        """Returns (unique candidate, match cache hit) or raises."""
        section = None
        if patch.section_context:
            section = document.find_section(patch.section_context)
            if section is None:
                tx.advance(PatchState.NOT_FOUND)
                raise AnchorNotFound(
                    f"Section '{patch.section_context}' not found",
                    self.suggestions.for_missing_section(document, patch.section_context),
                )
        scope = document.scope(section)

        key = self._match_key(patch)
        candidates = self.cache.get_matches(document.fingerprint, key) if self.cache is not None else None
        cache_hit = candidates is not None
        if candidates is None:
            candidates = self.matcher.find_candidates(
                document, patch.before_context, patch.after_context, patch.op, scope=scope
            )
            if self.cache is not None:
                self.cache.put_matches(document.fingerprint, key, candidates)

        result = resolve(candidates, self.config)

        if isinstance(result, Unique):
            tx.advance(PatchState.UNIQUE)
            return result.candidate, cache_hit

        if isinstance(result, Ambiguous):
            tx.advance(PatchState.AMBIGUOUS)
            described, hints = self.suggestions.for_ambiguous(document, result.candidates)
            lines = ", ".join(str(c.anchor + 1) for c in result.candidates)
            raise AmbiguousMatch(
                f"Context matches {len(result.candidates)} locations equally well (lines {lines})",
                candidates=described,
                suggestions=hints,
            )

        tx.advance(PatchState.NOT_FOUND)
        where = f" in section '{patch.section_context}'" if patch.section_context else ""
        raise AnchorNotFound(
            f"Context not found: could not locate the specified before/after context{where}",
            self.suggestions.for_not_found(
                document, patch.before_context, patch.after_context, section, patch.section_context
            ),
        )

    # --- Applying ---

    def _outcome(
        self,
        operation_id: str,
        document_id: str,
        patch: ContextPatch,
        before: Document,
        candidate: MatchCandidate,
        edit: AppliedEdit,
        fp: str,
    ) -> PatchOutcome:
        return PatchOutcome(
            operation_id=operation_id,
            document_id=document_id,
            operation=patch.op,
            fingerprint=fp,
            tier=candidate.tier,
            confidence=candidate.confidence,
            anchor_line=edit.anchor + 1,
            lines_modified=edit.lines_modified,
            excerpt=excerpt(edit.document, edit.changed_start, edit.changed_end, radius=self.config.excerpt_radius),
            preview=preview_diff(before.lines, edit.document.lines),
        )

    def _record(self, document_id: str, tier: Optional[str], started: float, cache_hit: bool, outcome: str) -> None:
        self.metrics.record(
            OperationRecord(
                document_id=document_id,
                tier=tier,
                elapsed=time.perf_counter() - started,
                cache_hit=cache_hit,
                outcome=outcome,
            )
        )

    async def apply(self, document_id: str, patch: Any, expected_fingerprint: str) -> PatchOutcome:
        """
        Applies one patch against the document version identified by
        `expected_fingerprint`. Raises a PatchError subclass on any failure,
        in which case stored content is untouched.
        """
        started = time.perf_counter()
        tx = PatchTransaction(document_id)
        tier: Optional[str] = None
        cache_hit = False

        try:
            patch = decode_patch(patch)
            async with self._locked(document_id):
                content, fp = await asyncio.to_thread(self.detector.read_checked, document_id, expected_fingerprint)
                document, cache_hit = self._parse(document_id, content, fp)

                candidate, match_hit = await asyncio.to_thread(self._resolve, document, patch, tx)
                cache_hit = cache_hit or match_hit
                tier = candidate.tier

                # No awaits past this point
                tx.advance(PatchState.APPLYING)
                edit = apply_to_document(document, patch, candidate)
                operation_id = new_operation_id()
                new_fp = self.store.write(document_id, edit.document.render(), fp)
                self.rollbacks.record(
                    Snapshot(
                        operation_id=operation_id,
                        document_id=document_id,
                        content_before=content,
                        fingerprint_before=fp,
                        fingerprint_after=new_fp,
                        transactions=(tx,),
                    )
                )
                if self.cache is not None:
                    self.cache.remember(edit.document)
                tx.advance(PatchState.APPLIED)
        except PatchError as e:
            if not tx.terminal:
                tx.advance(PatchState.FAILED)
            logger.warning(f"Patch on '{document_id}' failed: {e.kind}: {e.message}")
            self._record(document_id, tier, started, cache_hit, e.kind)
            raise

        logger.info(
            f"Applied {patch.op.value} to '{document_id}' at line {edit.anchor + 1} "
            f"via {candidate.tier} ({candidate.confidence:.2f})"
        )
        self._record(document_id, tier, started, cache_hit, "applied")
        return self._outcome(operation_id, document_id, patch, document, candidate, edit, new_fp)

    async def apply_with_rollback(self, document_id: str, patch: Any, expected_fingerprint: str) -> str:
        """Applies a patch and returns the operation id that can be rolled back."""
        outcome = await self.apply(document_id, patch, expected_fingerprint)
        return outcome.operation_id

    async def apply_batch(self, document_id: str, patches: Sequence[Any], expected_fingerprint: str) -> BatchOutcome:
        """
        Applies patches in order against one in-memory document, each seeing
        the results of the previous ones. All-or-nothing: if any patch fails
        the whole batch is discarded and nothing is written.
        """
        started = time.perf_counter()
        transactions: List[PatchTransaction] = []
        worst_tier: Optional[str] = None
        cache_hit = False

        try:
            decoded = []
            for i, payload in enumerate(patches):
                try:
                    decoded.append(decode_patch(payload))
                except PatchError as e:
                    e.message = f"Batch patch #{i}: {e.message}"
                    e.args = (e.message,)
                    raise
            if not decoded:
                raise InvalidInput("A batch must contain at least one patch")

            conflicts = detect_conflicts(decoded)
            for conflict in conflicts:
                logger.warning(f"Batch patches {conflict.patch_indices} share context lines")

            async with self._locked(document_id):
                content, fp = await asyncio.to_thread(self.detector.read_checked, document_id, expected_fingerprint)
                original, cache_hit = self._parse(document_id, content, fp)
                current = original
                operation_id = new_operation_id()
                results: List[PatchOutcome] = []

                for i, patch in enumerate(decoded):
                    tx = PatchTransaction(f"{document_id}#{i}")
                    transactions.append(tx)
                    try:
                        candidate, _ = await asyncio.to_thread(self._resolve, current, patch, tx)
                    except PatchError as e:
                        e.message = f"Batch patch #{i} failed, batch discarded: {e.message}"
                        e.args = (e.message,)
                        raise

                    if worst_tier is None or self._tier_order.get(candidate.tier, 0) > self._tier_order.get(
                        worst_tier, 0
                    ):
                        worst_tier = candidate.tier

                    tx.advance(PatchState.APPLYING)
                    edit = apply_to_document(current, patch, candidate)
                    results.append(
                        self._outcome(
                            operation_id,
                            document_id,
                            patch,
                            current,
                            candidate,
                            edit,
                            edit.document.fingerprint,
                        )
                    )
                    current = edit.document
                    if self.cache is not None:
                        self.cache.remember(current)

                # Single commit point for the whole batch
                new_fp = self.store.write(document_id, current.render(), fp)
                self.rollbacks.record(
                    Snapshot(
                        operation_id=operation_id,
                        document_id=document_id,
                        content_before=content,
                        fingerprint_before=fp,
                        fingerprint_after=new_fp,
                        transactions=tuple(transactions),
                    )
                )
                for tx in transactions:
                    tx.advance(PatchState.APPLIED)
        except PatchError as e:
            for tx in transactions:
                if not tx.terminal:
                    tx.advance(PatchState.FAILED)
            logger.warning(f"Batch on '{document_id}' discarded: {e.kind}: {e.message}")
            self._record(document_id, worst_tier, started, cache_hit, e.kind)
            raise

        logger.info(f"Applied batch of {len(results)} patches to '{document_id}'")
        self._record(document_id, worst_tier, started, cache_hit, "applied")
        return BatchOutcome(
            operation_id=operation_id,
            document_id=document_id,
            fingerprint=new_fp,
            patches_applied=len(results),
            total_lines_modified=sum(r.lines_modified for r in results),
            results=results,
            conflicts=conflicts,
            preview=preview_diff(original.lines, current.lines),
        )

    # --- Rollback ---

    async def rollback(self, operation_id: str) -> str:
        """
        Restores the pre-image of an operation if it is still the latest one on
        its document and nothing has changed the document since. Returns the
        restored fingerprint.
        """
        started = time.perf_counter()
        snapshot = self.rollbacks.find(operation_id)
        document_id = snapshot.document_id

        try:
            async with self._locked(document_id):
                _, actual = await asyncio.to_thread(self.detector.current, document_id)
                # Checked after the read, since commit() may discard the snapshot meanwhile
                latest = self.rollbacks.latest(document_id)
                if latest is None or latest.operation_id != operation_id:
                    raise RollbackRejected(
                        f"Operation '{operation_id}' was superseded by a later operation on '{document_id}'"
                    )
                if actual != snapshot.fingerprint_after:
                    raise StaleDocument(document_id, snapshot.fingerprint_after, actual)

                restored = self.store.write(document_id, snapshot.content_before, actual)
                self.rollbacks.discard(document_id)
                for tx in snapshot.transactions:
                    tx.advance(PatchState.ROLLED_BACK)
        except PatchError as e:
            logger.warning(f"Rollback of {operation_id} rejected: {e.message}")
            self._record(document_id, None, started, False, e.kind)
            raise

        logger.info(f"Rolled back {operation_id} on '{document_id}'")
        self._record(document_id, None, started, False, "rolled_back")
        return restored

    def commit(self, operation_id: str) -> bool:
        """Discards the retained snapshot for an operation."""
        return self.rollbacks.commit(operation_id)
