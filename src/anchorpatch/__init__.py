from importlib.metadata import PackageNotFoundError, version

from anchorpatch.document import Document, parse
from anchorpatch.engine import PatchEngine
from anchorpatch.errors import PatchError
from anchorpatch.models import EngineConfig, decode_patch
from anchorpatch.storage import FileSystemStore, InMemoryStore

try:
    __version__ = version("anchorpatch")
except PackageNotFoundError:
    # Package is not installed (e.g., running from source/dev)
    __version__ = "0.0.0-dev"

__all__ = [
    "PatchEngine",
    "EngineConfig",
    "Document",
    "parse",
    "decode_patch",
    "PatchError",
    "InMemoryStore",
    "FileSystemStore",
    "__version__",
]
