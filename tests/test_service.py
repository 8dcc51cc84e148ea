from __future__ import annotations

import json

import pytest

from family_graph.config import AppConfig, TraversalConfig
from family_graph.graph_builder import TraversalPolicy
from family_graph.models import ParentRef, Person, Union
from family_graph.service import read_tree, repair_unions
from family_graph.store import NotFoundError, TreeStore

OWNER = "owner-1"
FULL = AppConfig(traversal=TraversalConfig(policy=TraversalPolicy.FULL))


def _chain_store() -> TreeStore:
    store = TreeStore()
    store.add_person(Person(id="grandparent", owner_id=OWNER, first_name="祖父"))
    store.add_person(
        Person(id="parent", owner_id=OWNER, first_name="父", parent_refs=[ParentRef("grandparent")])
    )
    store.add_person(Person(id="focus", owner_id=OWNER, first_name="本人", parent_refs=[ParentRef("parent")]))
    return store


class TestReadTree:
    def test_full_tree(self) -> None:
        data = read_tree(_chain_store(), OWNER, focus_id="focus", config=FULL)
        assert data["focus_id"] == "focus"
        assert data["empty"] is False
        ids = {n["id"] for n in data["nodes"] if n["kind"] == "person"}
        assert ids == {"grandparent", "parent", "focus"}
        # そのまま JSON にできる
        json.dumps(data)

    def test_expanded_ids(self) -> None:
        data = read_tree(_chain_store(), OWNER, focus_id="focus", expanded_ids=["focus"])
        nodes = {n["id"]: n for n in data["nodes"] if n["kind"] == "person"}
        assert set(nodes) == {"parent", "focus"}
        assert nodes["parent"]["hidden_ancestor_count"] == 1

    def test_default_expands_focus_only(self) -> None:
        data = read_tree(_chain_store(), OWNER, focus_id="focus")
        ids = {n["id"] for n in data["nodes"] if n["kind"] == "person"}
        assert ids == {"parent", "focus"}

    def test_expanded_ids_override_full_policy(self) -> None:
        """展開状態を渡した場合は設定が full でも展開した人物だけをたどる。"""
        data = read_tree(_chain_store(), OWNER, focus_id="focus", expanded_ids=[], config=FULL)
        ids = {n["id"] for n in data["nodes"] if n["kind"] == "person"}
        assert ids == {"parent", "focus"}

    def test_hide_ancestors(self) -> None:
        data = read_tree(_chain_store(), OWNER, focus_id="focus", hide_ancestors=["parent"], config=FULL)
        ids = {n["id"] for n in data["nodes"] if n["kind"] == "person"}
        assert ids == {"parent", "focus"}

    def test_empty_owner(self) -> None:
        data = read_tree(TreeStore(), OWNER)
        assert data == {"nodes": [], "edges": [], "focus_id": None, "empty": True}

    def test_unknown_focus(self) -> None:
        with pytest.raises(NotFoundError):
            read_tree(_chain_store(), OWNER, focus_id="missing")


class TestRepairUnions:
    def test_counts(self) -> None:
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        store.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["a", "b"]), unique=False)
        assert repair_unions(store, OWNER) == {"merged_count": 1, "deleted_count": 1}
        assert repair_unions(store, OWNER) == {"merged_count": 0, "deleted_count": 0}
