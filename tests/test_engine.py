import asyncio

import pytest

from anchorpatch.applier import PatchState
from anchorpatch.engine import PatchEngine, detect_conflicts
from anchorpatch.errors import (
    AmbiguousMatch,
    AnchorNotFound,
    DocumentNotFound,
    InvalidInput,
    MatchTimeout,
    RollbackRejected,
    StaleDocument,
)
from anchorpatch.models import EngineConfig, decode_patch
from anchorpatch.storage import InMemoryStore

TICK_AUTH = {"operation": "replace", "before_context": ["- [ ] Implement auth"], "content": "- [x] Implement auth"}
ADD_CI = {
    "operation": "insert",
    "before_context": ["## Tasks"],
    "after_context": ["- [x] Implement auth"],
    "content": "- [ ] Setup CI",
}


def _read(store, doc_id):
    return store.read(doc_id)[0]


def _apply(engine, store, doc_id, payload):
    _, fp = store.read(doc_id)
    return asyncio.run(engine.apply(doc_id, payload, fp))


def test_apply_replace(engine, store, tasks_id):
    outcome = _apply(engine, store, tasks_id, TICK_AUTH)

    assert _read(store, tasks_id) == "## Tasks\n- [x] Implement auth\n- [ ] Add tests\n"
    assert outcome.operation_id.startswith("op_")
    assert outcome.tier == "exact"
    assert outcome.confidence == 1.0
    assert outcome.anchor_line == 2
    assert outcome.lines_modified == 1
    assert outcome.fingerprint == store.read(tasks_id)[1]
    assert ">    2 | - [x] Implement auth" in outcome.excerpt
    assert "+ - [x] Implement auth" in outcome.preview
    assert "- - [ ] Implement auth" in outcome.preview


def test_apply_with_rollback_returns_operation_id(engine, store, tasks_id):
    _, fp = store.read(tasks_id)
    operation_id = asyncio.run(engine.apply_with_rollback(tasks_id, TICK_AUTH, fp))
    assert engine.rollbacks.latest(tasks_id).operation_id == operation_id


def test_stale_fingerprint_is_rejected(engine, store, tasks_id):
    _, old_fp = store.read(tasks_id)
    store.put(tasks_id, "## Tasks\n- [ ] Implement auth\n- [ ] Add tests\n- [ ] Deploy\n")

    with pytest.raises(StaleDocument) as exc:
        asyncio.run(engine.apply(tasks_id, TICK_AUTH, old_fp))

    assert exc.value.expected == old_fp
    assert _read(store, tasks_id).endswith("- [ ] Deploy\n")
    assert store.writes == 0


def test_invalid_input_is_rejected_before_matching(engine, store, tasks_id, tasks_text):
    with pytest.raises(InvalidInput):
        _apply(engine, store, tasks_id, {"operation": "delete", "before_context": ["## Tasks"], "content": "x"})
    with pytest.raises(InvalidInput):
        _apply(engine, store, tasks_id, {"operation": "insert", "content": "x"})

    assert _read(store, tasks_id) == tasks_text
    assert engine.metrics.summary().outcomes == {"InvalidInput": 2}


def test_unknown_document(engine):
    with pytest.raises(DocumentNotFound):
        asyncio.run(engine.apply("nope.md", TICK_AUTH, "0" * 64))


def test_ambiguous_match_lists_candidates(engine, store, spec_id, sectioned_text):
    payload = {
        "operation": "replace",
        "before_context": ["- [ ] Write handler"],
        "content": "- [x] Write handler",
    }
    with pytest.raises(AmbiguousMatch) as exc:
        _apply(engine, store, spec_id, payload)

    err = exc.value
    assert [c["line"] for c in err.candidates] == [3, 6]
    assert [c["section"] for c in err.candidates] == ["## Backend", "## Frontend"]
    assert any("section_context='## Frontend'" in s for s in err.suggestions)
    assert _read(store, spec_id) == sectioned_text


def test_section_context_narrows_the_search(engine, store, spec_id):
    payload = {
        "operation": "replace",
        "section_context": "## Frontend",
        "before_context": ["- [ ] Write handler"],
        "content": "- [x] Write handler",
    }
    outcome = _apply(engine, store, spec_id, payload)

    lines = _read(store, spec_id).splitlines()
    assert lines[2] == "- [ ] Write handler"
    assert lines[5] == "- [x] Write handler"
    assert outcome.anchor_line == 6


def test_insert_at_section_start(engine, store, spec_id):
    payload = {
        "operation": "insert",
        "section_context": "Frontend",
        "after_context": ["- [ ] Write handler"],
        "content": "- [ ] Pick a framework",
    }
    _apply(engine, store, spec_id, payload)
    assert _read(store, spec_id).splitlines()[4:7] == [
        "## Frontend",
        "- [ ] Pick a framework",
        "- [ ] Write handler",
    ]


def test_missing_section_lists_headings(engine, store, spec_id):
    payload = {"operation": "delete", "section_context": "## Backnd", "before_context": ["- [ ] Add tests"]}
    with pytest.raises(AnchorNotFound) as exc:
        _apply(engine, store, spec_id, payload)

    assert "Backnd" in exc.value.message
    assert any("'## Backend'" in s for s in exc.value.suggestions)


def test_context_outside_section_is_not_used(engine, store, tasks_id):
    """
    Scenario: The context exists, but not inside the requested section.
    No silent fallback to the whole document.
    """
    store.put(tasks_id, "## Tasks\n- [ ] Implement auth\n## Done\n- [x] Write spec\n")
    payload = {
        "operation": "replace",
        "section_context": "## Done",
        "before_context": ["- [ ] Implement auth"],
        "content": "- [x] Implement auth",
    }
    with pytest.raises(AnchorNotFound) as exc:
        _apply(engine, store, tasks_id, payload)

    assert any("outside section '## Done'" in s for s in exc.value.suggestions)


def test_dissimilar_context_is_not_found(engine, store, tasks_id, tasks_text):
    payload = {"operation": "delete", "before_context": ["completely unrelated text here"]}
    with pytest.raises(AnchorNotFound) as exc:
        _apply(engine, store, tasks_id, payload)

    assert "Check if content has changed since last load" in exc.value.suggestions
    assert "Consider providing more context lines (3-5 recommended)" in exc.value.suggestions
    assert _read(store, tasks_id) == tasks_text


@pytest.mark.parametrize(
    "context",
    [
        ["tests"],
        ["Tasks"],
        ["- [ ] Add tests for the login and logout flows before the next release ships"],
    ],
)
def test_partial_context_never_deletes_a_line(engine, store, tasks_id, tasks_text, context):
    """
    Scenario: A context that only shares words with a task line, or wraps it
    in a longer sentence, must not delete that line.
    """
    with pytest.raises(AnchorNotFound):
        _apply(engine, store, tasks_id, {"operation": "delete", "before_context": context})
    assert _read(store, tasks_id) == tasks_text


def test_typo_in_context_still_applies(engine, store, tasks_id):
    payload = {
        "operation": "replace",
        "before_context": ["## Tasks", "- [ ] Implment auth"],
        "content": "- [x] Implement auth",
    }
    outcome = _apply(engine, store, tasks_id, payload)
    assert outcome.tier == "ratio"
    assert _read(store, tasks_id) == "## Tasks\n- [x] Implement auth\n- [ ] Add tests\n"


def test_match_timeout_leaves_document_untouched(store, tasks_id, tasks_text):
    engine = PatchEngine(store, EngineConfig(max_comparisons=1))
    payload = {"operation": "delete", "before_context": ["- [ ] Implment auth"]}

    with pytest.raises(MatchTimeout):
        _apply(engine, store, tasks_id, payload)

    assert _read(store, tasks_id) == tasks_text
    assert engine.metrics.summary().outcomes == {"MatchTimeout": 1}


def test_batch_applies_in_order_with_one_write(engine, store, tasks_id):
    _, fp = store.read(tasks_id)
    outcome = asyncio.run(engine.apply_batch(tasks_id, [TICK_AUTH, ADD_CI], fp))

    assert _read(store, tasks_id) == "## Tasks\n- [ ] Setup CI\n- [x] Implement auth\n- [ ] Add tests\n"
    assert store.writes == 1
    assert outcome.patches_applied == 2
    assert outcome.total_lines_modified == 2
    assert outcome.fingerprint == store.read(tasks_id)[1]
    assert {r.operation_id for r in outcome.results} == {outcome.operation_id}
    assert "+ - [ ] Setup CI" in outcome.preview


def test_failed_batch_writes_nothing(engine, store, tasks_id, tasks_text):
    _, fp = store.read(tasks_id)
    missing = {"operation": "delete", "before_context": ["completely unrelated text here"]}

    with pytest.raises(AnchorNotFound) as exc:
        asyncio.run(engine.apply_batch(tasks_id, [TICK_AUTH, missing], fp))

    assert "Batch patch #1" in exc.value.message
    assert _read(store, tasks_id) == tasks_text
    assert store.writes == 0
    assert engine.rollbacks.latest(tasks_id) is None


def test_batch_validates_every_patch_first(engine, store, tasks_id):
    _, fp = store.read(tasks_id)
    with pytest.raises(InvalidInput) as exc:
        asyncio.run(engine.apply_batch(tasks_id, [TICK_AUTH, {"operation": "delete"}], fp))
    assert "Batch patch #1" in exc.value.message

    with pytest.raises(InvalidInput):
        asyncio.run(engine.apply_batch(tasks_id, [], fp))
    assert store.writes == 0


def test_detect_conflicts():
    patches = [
        decode_patch({"operation": "insert", "before_context": ["## Tasks"], "content": "a"}),
        decode_patch({"operation": "insert", "after_context": ["- [ ] Add tests"], "content": "b"}),
        decode_patch({"operation": "delete", "before_context": ["## Tasks", ""]}),
    ]
    conflicts = detect_conflicts(patches)

    assert [c.patch_indices for c in conflicts] == [[0, 2]]
    assert conflicts[0].resolution_suggestions


def test_rollback_restores_pre_image(engine, store, tasks_id, tasks_text):
    outcome = _apply(engine, store, tasks_id, TICK_AUTH)
    tx = engine.rollbacks.latest(tasks_id).transactions[0]
    assert tx.state == PatchState.APPLIED

    restored = asyncio.run(engine.rollback(outcome.operation_id))

    assert _read(store, tasks_id) == tasks_text
    assert restored == store.read(tasks_id)[1]
    assert tx.state == PatchState.ROLLED_BACK
    with pytest.raises(RollbackRejected):
        asyncio.run(engine.rollback(outcome.operation_id))


def test_rollback_of_batch(engine, store, tasks_id, tasks_text):
    _, fp = store.read(tasks_id)
    outcome = asyncio.run(engine.apply_batch(tasks_id, [TICK_AUTH, ADD_CI], fp))
    asyncio.run(engine.rollback(outcome.operation_id))
    assert _read(store, tasks_id) == tasks_text


def test_superseded_operation_cannot_be_rolled_back(engine, store, tasks_id):
    first = _apply(engine, store, tasks_id, TICK_AUTH)
    second = _apply(engine, store, tasks_id, ADD_CI)

    with pytest.raises(RollbackRejected):
        asyncio.run(engine.rollback(first.operation_id))

    asyncio.run(engine.rollback(second.operation_id))
    assert _read(store, tasks_id) == "## Tasks\n- [x] Implement auth\n- [ ] Add tests\n"


def test_rollback_after_out_of_band_edit_is_stale(engine, store, tasks_id):
    outcome = _apply(engine, store, tasks_id, TICK_AUTH)
    store.put(tasks_id, "edited elsewhere\n")

    with pytest.raises(StaleDocument):
        asyncio.run(engine.rollback(outcome.operation_id))
    assert _read(store, tasks_id) == "edited elsewhere\n"


def test_commit_discards_snapshot(engine, store, tasks_id):
    outcome = _apply(engine, store, tasks_id, TICK_AUTH)

    assert engine.commit(outcome.operation_id) is True
    assert engine.commit(outcome.operation_id) is False
    with pytest.raises(RollbackRejected):
        asyncio.run(engine.rollback(outcome.operation_id))


def test_concurrent_patches_on_one_document(engine, store, tasks_id):
    """
    Scenario: Two callers patch the same document from the same read.
    The per-document lock serializes them and the second sees a stale fingerprint.
    """
    _, fp = store.read(tasks_id)
    delete_tests = {"operation": "delete", "before_context": ["- [ ] Add tests"]}

    async def both():
        return await asyncio.gather(
            engine.apply(tasks_id, TICK_AUTH, fp),
            engine.apply(tasks_id, delete_tests, fp),
            return_exceptions=True,
        )

    results = asyncio.run(both())

    assert sum(isinstance(r, StaleDocument) for r in results) == 1
    assert store.writes == 1


def test_different_documents_proceed_independently(engine, store, tasks_id, spec_id):
    _, tasks_fp = store.read(tasks_id)
    _, spec_fp = store.read(spec_id)
    frontend = {
        "operation": "delete",
        "section_context": "## Frontend",
        "before_context": ["- [ ] Add tests"],
    }

    async def both():
        return await asyncio.gather(
            engine.apply(tasks_id, TICK_AUTH, tasks_fp),
            engine.apply(spec_id, frontend, spec_fp),
        )

    first, second = asyncio.run(both())
    assert first.document_id == tasks_id
    assert second.document_id == spec_id
    assert store.writes == 2


def test_document_locks_are_released(engine, store, tasks_id, spec_id):
    _apply(engine, store, tasks_id, TICK_AUTH)
    with pytest.raises(AnchorNotFound):
        _apply(engine, store, spec_id, {"operation": "delete", "before_context": ["zzz"]})
    assert engine._locks == {}
    assert engine._lock_users == {}


def test_mixed_line_endings_are_written_back_unchanged():
    store = InMemoryStore({"notes.md": "## Tasks\r\n- [ ] Implement auth\n- [ ] Add tests\n"})
    engine = PatchEngine(store)
    _, fp = asyncio.run(engine.read("notes.md"))
    payload = {"operation": "replace", "before_context": ["- [ ] Add tests"], "content": "- [x] Add tests"}
    asyncio.run(engine.apply("notes.md", payload, fp))

    assert _read(store, "notes.md") == "## Tasks\r\n- [ ] Implement auth\n- [x] Add tests\n"


def test_cache_does_not_change_outcomes(tasks_id, tasks_text):
    sequence = [
        TICK_AUTH,
        ADD_CI,
        {"operation": "delete", "before_context": ["- [ ] Setup CI"]},
    ]
    results = []
    for enabled in (True, False):
        store = InMemoryStore({tasks_id: tasks_text})
        engine = PatchEngine(store, EngineConfig(cache_enabled=enabled))
        outcomes = [_apply(engine, store, tasks_id, p) for p in sequence]
        results.append((_read(store, tasks_id), [(o.tier, o.anchor_line, o.confidence) for o in outcomes]))

    assert results[0] == results[1]


def test_disabled_cache(store):
    engine = PatchEngine(store, EngineConfig(cache_enabled=False))
    assert engine.cache is None


def test_metrics(engine, store, tasks_id):
    _apply(engine, store, tasks_id, TICK_AUTH)
    _apply(engine, store, tasks_id, ADD_CI)
    with pytest.raises(AnchorNotFound):
        _apply(engine, store, tasks_id, {"operation": "delete", "before_context": ["completely unrelated text here"]})

    summary = engine.metrics.summary()
    assert summary.total_operations == 3
    assert summary.successful_operations == 2
    assert summary.outcomes == {"applied": 2, "AnchorNotFound": 1}
    assert summary.tiers == {"exact": 2, "not_found": 1}
    # The edited document is cached, so every read after the first hits
    assert summary.cache_hits == 2
    assert summary.cache_misses == 1
    assert summary.max_latency_seconds >= summary.mean_latency_seconds > 0
