from typing import Any, Dict, List, Optional


class PatchError(Exception):
    """
    Base class for every failure the patching engine reports.

    Each subclass carries a stable `kind` so callers (and the MCP adapter) can
    branch on the error without parsing messages. Failures are always local to
    one patch or one batch and are never retried by the engine.
    """

    kind = "PatchError"

    def __init__(self, message: str, suggestions: Optional[List[str]] = None):
        super().__init__(message)
        self.message = message
        self.suggestions = list(suggestions or [])

    def to_payload(self) -> Dict[str, Any]:
        return {
            "error": self.kind,
            "message": self.message,
            "suggestions": self.suggestions,
        }


class InvalidInput(PatchError):
    kind = "InvalidInput"


class AnchorNotFound(PatchError):
    kind = "AnchorNotFound"


class AmbiguousMatch(PatchError):
    kind = "AmbiguousMatch"

    def __init__(
        self,
        message: str,
        candidates: Optional[List[Dict[str, Any]]] = None,
        suggestions: Optional[List[str]] = None,
    ):
        super().__init__(message, suggestions)
        self.candidates = list(candidates or [])

    def to_payload(self) -> Dict[str, Any]:
        payload = super().to_payload()
        payload["candidates"] = self.candidates
        return payload


class StaleDocument(PatchError):
    kind = "StaleDocument"

    def __init__(self, document_id: str, expected: str, actual: str):
        super().__init__(
            f"Document '{document_id}' changed since it was read "
            f"(expected fingerprint {expected[:12]}, found {actual[:12]})",
            ["Reload the document and rebuild the patch against the current content"],
        )
        self.document_id = document_id
        self.expected = expected
        self.actual = actual


class MatchTimeout(PatchError):
    kind = "MatchTimeout"


class RollbackRejected(PatchError):
    kind = "RollbackRejected"


class DocumentNotFound(PatchError):
    kind = "DocumentNotFound"
