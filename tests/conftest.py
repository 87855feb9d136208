import pytest

from anchorpatch.engine import PatchEngine
from anchorpatch.storage import InMemoryStore

TASK_LINES = ["## Tasks", "- [ ] Implement auth", "- [ ] Add tests"]

SECTIONED_LINES = [
    "# Spec",
    "## Backend",
    "- [ ] Write handler",
    "- [ ] Add tests",
    "## Frontend",
    "- [ ] Write handler",
    "- [ ] Add tests",
]


@pytest.fixture
def tasks_id():
    return "proj/specs/auth/task-list.md"


@pytest.fixture
def spec_id():
    return "proj/specs/auth/spec.md"


@pytest.fixture
def task_lines():
    return list(TASK_LINES)


@pytest.fixture
def tasks_text():
    """The three-line task list used across scenarios, with a trailing newline."""
    return "\n".join(TASK_LINES) + "\n"


@pytest.fixture
def sectioned_text():
    """Two sections holding identical task lines."""
    return "\n".join(SECTIONED_LINES) + "\n"


@pytest.fixture
def store(tasks_id, spec_id, tasks_text, sectioned_text):
    return InMemoryStore({tasks_id: tasks_text, spec_id: sectioned_text})


@pytest.fixture
def engine(store):
    return PatchEngine(store)
