"""
Shared fixtures: a small workspace on disk and a store rooted in tmp_path.
"""

import pytest

from merkle_context.context import NodeContextCollector
from merkle_context.store import ContextStore
from merkle_context.tree.walker import TreeWalker


@pytest.fixture
def workspace(tmp_path):
    """Workspace with two source files and a README."""
    root = tmp_path / "workspace"
    (root / "src").mkdir(parents=True)
    (root / "src" / "app.py").write_text("print('hello')\n")
    (root / "src" / "util.py").write_text("def add(a, b):\n    return a + b\n")
    (root / "README.md").write_text("# Demo\n")
    return root


@pytest.fixture
def store(tmp_path):
    """Empty ContextStore."""
    return ContextStore(tmp_path / "store")


@pytest.fixture
def ingested(store, workspace):
    """IngestReport for the workspace."""
    return store.ingest(workspace)


@pytest.fixture
def find_node(store, workspace, ingested):
    """Resolve a workspace-relative path to its NodeID."""
    walker = TreeWalker(workspace, store.nodes)

    def _find(rel_path: str) -> bytes:
        record = walker.find(ingested, rel_path)
        assert record is not None, f"{rel_path} not ingested"
        return record.node_id

    return _find


@pytest.fixture
def collector(store, workspace):
    return NodeContextCollector(store.nodes, workspace)
