import json
import logging
import os
import sys
from typing import Any, Dict, List, Optional

import structlog
from mcp.server.fastmcp import FastMCP

# --- LOGGING CONFIGURATION ---
# CRITICAL: Redirect all logs to stderr.
# Any output to stdout will break the MCP JSON-RPC protocol.
logging.basicConfig(stream=sys.stderr, level=logging.INFO, force=True)

structlog.configure(
    processors=[
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.JSONRenderer(),
    ],
    logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
)
# -----------------------------

from anchorpatch.engine import PatchEngine
from anchorpatch.errors import PatchError
from anchorpatch.storage import FileSystemStore

logger = structlog.get_logger(__name__)

# Initialize the MCP Server
mcp = FastMCP("Anchorpatch Context Patching Service")

_engine: Optional[PatchEngine] = None


def get_engine() -> PatchEngine:
    """Engine over the directory named by ANCHORPATCH_ROOT (default: cwd), created on first use."""
    global _engine
    if _engine is None:
        root = os.environ.get("ANCHORPATCH_ROOT", os.getcwd())
        logger.info(f"Serving documents from {root}")
        _engine = PatchEngine(FileSystemStore(root))
    return _engine


def _error(e: PatchError) -> str:
    return json.dumps(e.to_payload(), indent=2)


@mcp.tool()
async def read_document(document_id: str) -> str:
    """
    Reads a document and returns its content together with its fingerprint.

    Pass the fingerprint back as `expected_fingerprint` when patching; edits
    built against an older read are rejected instead of being misapplied.
    """
    try:
        content, fp = await get_engine().read(document_id)
        return json.dumps({"document_id": document_id, "fingerprint": fp, "content": content}, indent=2)
    except PatchError as e:
        return _error(e)


@mcp.tool()
async def patch_document(
    document_id: str,
    expected_fingerprint: str,
    operation: str,
    before_context: Optional[List[str]] = None,
    after_context: Optional[List[str]] = None,
    content: str = "",
    section_context: Optional[str] = None,
) -> str:
    """
    Applies one insert/replace/delete located by surrounding lines instead of line numbers.

    - insert: `content` goes between the before_context and after_context lines.
    - replace: the last before_context line (or the first after_context line
      when before_context is empty) is replaced by `content`.
    - delete: that same line is removed.
    Use section_context (e.g. "## Tasks") when the same lines appear in several places.
    Returns the operation id (for rollback), the new fingerprint and a preview.
    """
    payload: Dict[str, Any] = {
        "operation": operation,
        "before_context": before_context or [],
        "after_context": after_context or [],
        "content": content,
        "section_context": section_context,
    }
    try:
        outcome = await get_engine().apply(document_id, payload, expected_fingerprint)
        return outcome.model_dump_json(indent=2)
    except PatchError as e:
        return _error(e)


@mcp.tool()
async def patch_document_batch(document_id: str, expected_fingerprint: str, patches: List[Dict[str, Any]]) -> str:
    """
    Applies several patches in order as one all-or-nothing operation.
    Each patch sees the result of the previous ones. If any patch fails, nothing is written.
    """
    try:
        outcome = await get_engine().apply_batch(document_id, patches, expected_fingerprint)
        return outcome.model_dump_json(indent=2)
    except PatchError as e:
        return _error(e)


@mcp.tool()
async def rollback_operation(operation_id: str) -> str:
    """
    Restores a document to its state before the given operation.
    Only the latest operation on a document can be rolled back, and only if the
    document has not changed since.
    """
    try:
        fp = await get_engine().rollback(operation_id)
        return json.dumps({"operation_id": operation_id, "rolled_back": True, "fingerprint": fp}, indent=2)
    except PatchError as e:
        return _error(e)


@mcp.tool()
def commit_operation(operation_id: str) -> str:
    """Discards the rollback snapshot of an operation once it is accepted."""
    committed = get_engine().commit(operation_id)
    return json.dumps({"operation_id": operation_id, "committed": committed}, indent=2)


@mcp.tool()
def get_patch_metrics() -> str:
    """Returns aggregate counters: outcomes, tiers used, cache hits and latency."""
    return get_engine().metrics.summary().model_dump_json(indent=2)


def main():
    # Runs the server over stdio
    mcp.run()


if __name__ == "__main__":
    main()
