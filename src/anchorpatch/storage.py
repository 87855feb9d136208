"""
Storage collaborators.

The engine only depends on the narrow DocumentStore contract: read a document
with its fingerprint, and write new content conditionally on the fingerprint
the writer last saw.
"""
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, Optional, Protocol, Tuple, Union

import structlog

from anchorpatch.document import fingerprint
from anchorpatch.errors import DocumentNotFound, InvalidInput, StaleDocument
from anchorpatch.models import FileType

logger = structlog.get_logger(__name__)

SPEC_FILE_NAMES = {
    FileType.SPEC: "spec.md",
    FileType.NOTES: "notes.md",
    FileType.TASKS: "task-list.md",
}


def spec_document_id(project_name: str, spec_name: str, file_type: Union[FileType, str]) -> str:
    """Maps a project/spec/file-type triple to a document id relative to a store root."""
    return f"{project_name}/specs/{spec_name}/{SPEC_FILE_NAMES[FileType(file_type)]}"


class DocumentStore(Protocol):
    def read(self, document_id: str) -> Tuple[str, str]:
        """Returns (content, fingerprint)."""
        ...

    def write(self, document_id: str, new_content: str, expected_fingerprint: str) -> str:
        """Writes content if the stored fingerprint still matches; returns the new fingerprint."""
        ...


class InMemoryStore:
    def __init__(self, documents: Optional[Dict[str, str]] = None):
        self._documents: Dict[str, str] = dict(documents or {})
        self._lock = threading.Lock()
        self.writes = 0

    def read(self, document_id: str) -> Tuple[str, str]:
        with self._lock:
            if document_id not in self._documents:
                raise DocumentNotFound(f"Document '{document_id}' not found")
            content = self._documents[document_id]
        return content, fingerprint(content)

    def write(self, document_id: str, new_content: str, expected_fingerprint: str) -> str:
        with self._lock:
            current = self._documents.get(document_id)
            if current is None:
                raise DocumentNotFound(f"Document '{document_id}' not found")
            actual = fingerprint(current)
            if actual != expected_fingerprint:
                raise StaleDocument(document_id, expected_fingerprint, actual)
            self._documents[document_id] = new_content
            self.writes += 1
        return fingerprint(new_content)

    def put(self, document_id: str, content: str) -> str:
        """Unconditional write, for seeding and simulating out-of-band edits."""
        with self._lock:
            self._documents[document_id] = content
        return fingerprint(content)


class FileSystemStore:
    """
    Documents are UTF-8 files under a root directory; ids are relative paths.
    Line endings are preserved byte for byte, and writes go through a temp
    file plus os.replace so readers never observe a partial write.
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self._lock = threading.Lock()

    def _path(self, document_id: str) -> Path:
        path = (self.root / document_id).resolve()
        try:
            path.relative_to(self.root)
        except ValueError:
            raise InvalidInput(f"Document id '{document_id}' escapes the store root") from None
        return path

    def read(self, document_id: str) -> Tuple[str, str]:
        path = self._path(document_id)
        if not path.is_file():
            raise DocumentNotFound(f"Document '{document_id}' not found under {self.root}")
        with open(path, "r", encoding="utf-8", newline="") as f:
            content = f.read()
        return content, fingerprint(content)

    def write(self, document_id: str, new_content: str, expected_fingerprint: str) -> str:
        path = self._path(document_id)
        with self._lock:
            _, actual = self.read(document_id)
            if actual != expected_fingerprint:
                raise StaleDocument(document_id, expected_fingerprint, actual)

            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8", newline="") as f:
                    f.write(new_content)
                os.replace(tmp_name, path)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise

        logger.debug(f"Wrote {len(new_content)} chars to {path}")
        return fingerprint(new_content)
