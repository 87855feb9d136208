from enum import Enum
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator, model_validator

from anchorpatch.errors import InvalidInput


class PatchOperation(str, Enum):
    INSERT = "insert"
    REPLACE = "replace"
    DELETE = "delete"


class FileType(str, Enum):
    SPEC = "spec"
    NOTES = "notes"
    TASKS = "tasks"


class _PatchBase(BaseModel):
    """
    Fields shared by every context patch.
    The edit location is described by landmark lines, never by line numbers.
    """

    file_type: FileType = FileType.SPEC
    # Heading text (optionally with its leading #'s) used to scope the search
    section_context: Optional[str] = None
    # Lines expected immediately before the edit point
    before_context: List[str] = Field(default_factory=list)
    # Lines expected immediately after the edit point
    after_context: List[str] = Field(default_factory=list)
    content: str = ""

    @field_validator("section_context")
    @classmethod
    def _blank_section_is_none(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def _require_some_context(self):
        if not self.before_context and not self.after_context:
            raise ValueError("At least one of before_context or after_context must be provided")
        return self

    @property
    def op(self) -> PatchOperation:
        return PatchOperation(self.operation)


class InsertPatch(_PatchBase):
    operation: Literal["insert"] = "insert"

    @model_validator(mode="after")
    def _require_content(self):
        if not self.content:
            raise ValueError("Content cannot be empty for insert/replace operations")
        return self


class ReplacePatch(_PatchBase):
    operation: Literal["replace"] = "replace"

    @model_validator(mode="after")
    def _require_content(self):
        if not self.content:
            raise ValueError("Content cannot be empty for insert/replace operations")
        return self


class DeletePatch(_PatchBase):
    operation: Literal["delete"] = "delete"

    @model_validator(mode="after")
    def _forbid_content(self):
        if self.content:
            raise ValueError("Content must be empty for delete operations")
        return self


ContextPatch = Annotated[
    Union[InsertPatch, ReplacePatch, DeletePatch],
    Field(discriminator="operation"),
]

_PATCH_ADAPTER = TypeAdapter(ContextPatch)


def _describe_validation_error(error: ValidationError) -> str:
    parts = []
    for item in error.errors():
        # Drop the union tag from the location, it is noise for the caller
        loc = [str(p) for p in item.get("loc", ()) if p not in ("insert", "replace", "delete")]
        msg = item.get("msg", "invalid value").replace("Value error, ", "")
        parts.append(f"{'.'.join(loc)}: {msg}" if loc else msg)
    return "; ".join(parts)


def decode_patch(payload: Any) -> "ContextPatch":
    """
    Decodes a loosely-typed payload (dict from JSON) into a validated patch.
    All request validation happens here; anything malformed becomes InvalidInput.
    """
    if isinstance(payload, _PatchBase):
        return payload
    try:
        return _PATCH_ADAPTER.validate_python(payload)
    except ValidationError as e:
        raise InvalidInput(f"Invalid patch: {_describe_validation_error(e)}") from e


class EngineConfig(BaseModel):
    """Tunables for matching, disambiguation, caching and bounds."""

    ratio_threshold: float = Field(0.85, ge=0.0, le=1.0)
    token_threshold: float = Field(0.90, ge=0.0, le=1.0)
    transposition_threshold: float = Field(0.85, ge=0.0, le=1.0)
    # Lines longer than this are not scored by the transposition tier
    max_transposition_length: int = Field(120, gt=0)
    tie_margin: float = Field(0.02, ge=0.0, le=1.0)
    acceptance_threshold: float = Field(0.5, ge=0.0, le=1.0)
    suggestion_threshold: float = Field(0.5, ge=0.0, le=1.0)
    ignore_case: bool = False
    match_timeout_seconds: float = Field(5.0, gt=0.0)
    # Upper bound on line comparisons for one fuzzy pass
    max_comparisons: int = Field(2_000_000, gt=0)
    cache_enabled: bool = True
    cache_max_entries: int = Field(64, gt=0)
    excerpt_radius: int = Field(2, ge=0)


class PatchOutcome(BaseModel):
    operation_id: str
    document_id: str
    operation: PatchOperation
    fingerprint: str
    tier: str
    confidence: float
    # 1-based line of the anchor in the edited document
    anchor_line: int
    lines_modified: int
    excerpt: str
    preview: str = ""


class PatchConflict(BaseModel):
    patch_indices: List[int]
    description: str
    resolution_suggestions: List[str] = Field(default_factory=list)


class BatchOutcome(BaseModel):
    operation_id: str
    document_id: str
    fingerprint: str
    patches_applied: int
    total_lines_modified: int
    results: List[PatchOutcome]
    conflicts: List[PatchConflict] = Field(default_factory=list)
    preview: str = ""
