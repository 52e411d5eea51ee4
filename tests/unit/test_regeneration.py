"""Tests for tree diffing and regeneration planning."""

import pytest

from merkle_context.regeneration import NodeChange, diff_trees, plan_regeneration
from merkle_context.tree.walker import TreeWalker


@pytest.fixture
def reingest(store, workspace):
    """Edit the workspace with a callback, then ingest it again."""

    def _reingest(edit):
        edit(workspace)
        return store.ingest(workspace)

    return _reingest


def _paths(changes):
    return [change.path for change in changes]


class TestDiffTrees:
    """Tests for diff_trees."""

    def test_unchanged_tree(self, store, ingested):
        assert diff_trees(store.nodes, ingested.root_id, ingested.root_id) == []

    def test_edit_changes_file_and_ancestors(self, store, workspace, ingested, find_node, reingest):
        updated = reingest(lambda root: (root / "src" / "app.py").write_text("print('bye')\n"))

        changes = diff_trees(store.nodes, ingested.root_id, updated.root_id)

        assert _paths(changes) == [".", "src", "src/app.py"]
        app = changes[-1]
        assert app.previous_id == find_node("src/app.py")
        assert app.current_id == TreeWalker(workspace, store.nodes).find(updated, "src/app.py").node_id

    def test_added_file_has_no_predecessor(self, store, ingested, reingest):
        updated = reingest(lambda root: (root / "src" / "new.py").write_text("x = 1\n"))

        changes = {change.path: change for change in diff_trees(store.nodes, ingested.root_id, updated.root_id)}

        assert set(changes) == {".", "src", "src/new.py"}
        assert changes["src/new.py"].previous_id is None
        assert changes["src"].previous_id is not None

    def test_non_recursive_compares_root_only(self, store, ingested, reingest):
        updated = reingest(lambda root: (root / "README.md").write_text("# Changed\n"))
        assert _paths(diff_trees(store.nodes, ingested.root_id, updated.root_id, recursive=False)) == ["."]


class TestPlanRegeneration:
    """Tests for plan_regeneration."""

    def test_carries_agents_from_predecessor(self, store, find_node):
        old_app = find_node("src/app.py")
        docs = store.commit_frame(old_app, "docs", b"old docs")
        store.commit_frame(old_app, "api", b"old api")
        change = NodeChange(path="src/app.py", previous_id=old_app, current_id=find_node("src/util.py"))

        tasks = plan_regeneration(store.heads, [change])

        assert [task.agent_id for task in tasks] == ["api", "docs"]
        assert tasks[1].previous_frame == docs.frame_id
        assert all(task.change is change for task in tasks)

    def test_agent_filter(self, store, find_node):
        old_app = find_node("src/app.py")
        store.commit_frame(old_app, "docs", b"old docs")
        store.commit_frame(old_app, "api", b"old api")
        change = NodeChange(path="src/app.py", previous_id=old_app, current_id=old_app)

        tasks = plan_regeneration(store.heads, [change], agents=["docs"])
        assert [task.agent_id for task in tasks] == ["docs"]

    def test_new_paths_not_planned(self, store, find_node):
        change = NodeChange(path="src/new.py", previous_id=None, current_id=find_node("src/app.py"))
        assert plan_regeneration(store.heads, [change]) == []
