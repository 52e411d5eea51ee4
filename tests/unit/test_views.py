"""Tests for ViewPolicy and ViewComposer."""

import pytest
from pydantic import ValidationError

from merkle_context.errors import NodeUnknown
from merkle_context.identity import compute_node_id
from merkle_context.views import MAX_VIEW_FRAMES, OrderingPolicy, ViewComposer, ViewPolicy


@pytest.fixture
def composer(store):
    return ViewComposer(store.heads, store.frame_sets)


@pytest.fixture
def app_node(find_node):
    return find_node("src/app.py")


def _commit(store, node_id, agent_id, text):
    return store.commit_frame(node_id, agent_id, text.encode()).frame_id


class TestViewPolicy:
    """Tests for the closed policy model."""

    def test_defaults(self):
        policy = ViewPolicy()
        assert policy.max_frames == 10
        assert policy.ordering == OrderingPolicy.RECENCY
        assert policy.include_agents is None

    def test_unknown_option_rejected(self):
        with pytest.raises(ValidationError):
            ViewPolicy(max_frames=5, semantic_search=True)

    def test_max_frames_bounds(self):
        assert ViewPolicy(max_frames=MAX_VIEW_FRAMES).max_frames == MAX_VIEW_FRAMES
        with pytest.raises(ValidationError):
            ViewPolicy(max_frames=MAX_VIEW_FRAMES + 1)
        with pytest.raises(ValidationError):
            ViewPolicy(max_frames=-1)

    def test_blank_agent_rejected(self):
        with pytest.raises(ValidationError):
            ViewPolicy(include_agents=("docs", " "))

    def test_ordering_from_string(self):
        assert ViewPolicy(ordering="agent").ordering == OrderingPolicy.AGENT

    def test_frozen(self):
        policy = ViewPolicy()
        with pytest.raises(ValidationError):
            policy.max_frames = 3

    def test_admits(self):
        policy = ViewPolicy(include_agents=("docs", "api"), exclude_agents=("api",))
        assert policy.admits("docs")
        assert not policy.admits("api")
        assert not policy.admits("other")


class TestViewComposer:
    """Tests for ViewComposer.select."""

    def test_empty_node(self, composer, app_node):
        assert composer.select(app_node, ViewPolicy()) == []

    def test_recency_ordering(self, store, composer, app_node):
        first = _commit(store, app_node, "docs", "one")
        second = _commit(store, app_node, "api", "two")
        third = _commit(store, app_node, "tests", "three")
        assert composer.select(app_node, ViewPolicy()) == [third, second, first]

    def test_recency_uses_latest_commit_per_agent(self, store, composer, app_node):
        _commit(store, app_node, "docs", "one")
        api = _commit(store, app_node, "api", "two")
        docs = _commit(store, app_node, "docs", "three")
        assert composer.select(app_node, ViewPolicy()) == [docs, api]

    def test_agent_ordering(self, store, composer, app_node):
        zeta = _commit(store, app_node, "zeta", "z")
        alpha = _commit(store, app_node, "alpha", "a")
        assert composer.select(app_node, ViewPolicy(ordering="agent")) == [alpha, zeta]

    def test_bounded(self, store, composer, app_node):
        for i in range(6):
            _commit(store, app_node, f"agent{i}", f"frame {i}")
        assert len(composer.select(app_node, ViewPolicy(max_frames=3))) == 3
        assert composer.select(app_node, ViewPolicy(max_frames=0)) == []

    def test_include_exclude(self, store, composer, app_node):
        docs = _commit(store, app_node, "docs", "d")
        _commit(store, app_node, "api", "a")
        tests = _commit(store, app_node, "tests", "t")

        assert composer.select(app_node, ViewPolicy(include_agents=("docs",))) == [docs]
        assert composer.select(app_node, ViewPolicy(exclude_agents=("api",), ordering="agent")) == [docs, tests]

    def test_other_nodes_not_included(self, store, composer, find_node, app_node):
        _commit(store, find_node("src/util.py"), "docs", "util docs")
        assert composer.select(app_node, ViewPolicy()) == []

    def test_deterministic(self, store, composer, app_node):
        for agent in ("b", "a", "c"):
            _commit(store, app_node, agent, agent)
        policy = ViewPolicy(ordering="agent", max_frames=2)
        assert composer.select(app_node, policy) == composer.select(app_node, policy)

    def test_unknown_node(self, composer):
        with pytest.raises(NodeUnknown):
            composer.select(compute_node_id("ghost", None, []), ViewPolicy())
