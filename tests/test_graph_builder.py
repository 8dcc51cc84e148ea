from __future__ import annotations

import logging
from datetime import date

import pytest

from family_graph.graph_builder import (
    ExpansionConfig,
    TraversalPolicy,
    UnionSource,
    build_graph,
    virtual_union_id,
)
from family_graph.models import Gender, ParentRef, Person, RelationshipType
from family_graph.relations import resolve_children, resolve_parents
from family_graph.store import NotFoundError, TreeStore
from family_graph.unions import add_child_to_union, create_union

OWNER = "owner-1"
FULL = ExpansionConfig(policy=TraversalPolicy.FULL)


def _make_person(
    store: TreeStore,
    id: str,
    gender: Gender = Gender.MALE,
    parent_ids: list[str] | None = None,
    owner_id: str = OWNER,
    **kwargs,
) -> Person:
    return store.add_person(
        Person(
            id=id,
            owner_id=owner_id,
            first_name=id,
            gender=gender,
            birth_date=date(2000, 1, 1),
            parent_refs=[ParentRef(pid) for pid in parent_ids or []],
            **kwargs,
        )
    )


def _build_mario_family() -> tuple[TreeStore, str]:
    """Mario と Laura の Union に Luca のみを登録し、Giovanni は Mario の子としてだけ登録する。"""
    store = TreeStore()
    _make_person(store, "mario")
    _make_person(store, "laura", Gender.FEMALE)
    union = create_union(store, "mario", "laura", OWNER)
    _make_person(store, "giovanni", parent_ids=["mario"])
    _make_person(store, "luca", parent_ids=["mario", "laura"])
    add_child_to_union(store, union.id, "luca", OWNER)
    return store, union.id


def _build_three_generations() -> TreeStore:
    """世代-2: g1 -- g2 / 世代-1: p1 (g1,g2の子) -- p2 / 世代0: child"""
    store = TreeStore()
    for pid in ("g1", "g2", "p1", "p2", "child"):
        _make_person(store, pid)
    grand = create_union(store, "g1", "g2", OWNER)
    add_child_to_union(store, grand.id, "p1", OWNER)
    parents = create_union(store, "p1", "p2", OWNER)
    add_child_to_union(store, parents.id, "child", OWNER)
    return store


class TestBuildGraph:
    def test_real_union_only_holds_explicit_children(self) -> None:
        store, union_id = _build_mario_family()
        assert store.require_union(union_id, OWNER).children_ids == ["luca"]

        graph = build_graph(store, "mario", OWNER)
        assert set(graph.persons) == {"mario", "laura", "giovanni", "luca"}

        real = [u for u in graph.unions.values() if u.source is UnionSource.REAL]
        assert [u.id for u in real] == [union_id]
        assert real[0].children_ids == ["luca"]

    def test_single_parent_child_uses_placeholder(self) -> None:
        """Union に属さない片親の子は推定 Union にぶら下がる。"""
        store, union_id = _build_mario_family()
        graph = build_graph(store, "mario", OWNER)

        vid = virtual_union_id(["mario"])
        assert vid == "v-mario"
        placeholder = graph.unions[vid]
        assert placeholder.source is UnionSource.VIRTUAL
        assert placeholder.partner_ids == ["mario"]
        assert placeholder.children_ids == ["giovanni"]
        assert "giovanni" not in graph.unions[union_id].children_ids

    def test_three_generations(self) -> None:
        store = _build_three_generations()
        graph = build_graph(store, "child", OWNER, expansion=FULL)
        assert len(graph.persons) == 5
        assert len(graph.unions) == 2
        assert graph.persons["child"].generation == 0
        assert graph.persons["p1"].generation == -1
        assert graph.persons["p2"].generation == -1
        assert graph.persons["g1"].generation == -2
        assert graph.persons["g2"].generation == -2

    def test_union_generation_follows_partners(self) -> None:
        store = _build_three_generations()
        graph = build_graph(store, "child", OWNER, expansion=FULL)
        generations = sorted(u.generation for u in graph.unions.values())
        assert generations == [-2, -1]

    def test_child_generation_greater_than_parent(self) -> None:
        store = _build_three_generations()
        graph = build_graph(store, "g1", OWNER, expansion=FULL)
        for union in graph.unions.values():
            for child_id in union.children_ids:
                assert graph.persons[child_id].generation > union.generation

    def test_cycle_terminates(self) -> None:
        """親子関係が循環していても探索は終了し、各人物は1回だけ現れる。"""
        store = TreeStore()
        _make_person(store, "a", parent_ids=["b"])
        _make_person(store, "b", parent_ids=["a"])
        graph = build_graph(store, "a", OWNER)
        assert set(graph.persons) == {"a", "b"}
        assert graph.persons["a"].generation == 0
        assert graph.persons["b"].generation == -1

    def test_self_parent_terminates(self) -> None:
        store = TreeStore()
        _make_person(store, "a", parent_ids=["a"])
        graph = build_graph(store, "a", OWNER)
        assert set(graph.persons) == {"a"}

    def test_max_nodes(self, caplog: pytest.LogCaptureFixture) -> None:
        store = TreeStore()
        previous: str | None = None
        for i in range(10):
            pid = f"p{i}"
            _make_person(store, pid, parent_ids=[previous] if previous else None)
            previous = pid
        with caplog.at_level(logging.WARNING, logger="family_graph.graph_builder"):
            graph = build_graph(store, "p9", OWNER, expansion=FULL, max_nodes=3)
        assert len(graph.persons) == 3
        assert "stopped at 3 nodes" in caplog.text

    def test_dangling_references_ignored(self) -> None:
        store = TreeStore()
        _make_person(store, "a", parent_ids=["missing"], children=["ghost"], spouse=["nobody"])
        graph = build_graph(store, "a", OWNER)
        assert set(graph.persons) == {"a"}
        assert graph.unions == {}
        assert graph.persons["a"].hidden_ancestor_count == 0
        assert graph.persons["a"].hidden_descendant_count == 0

    def test_default_focus(self) -> None:
        store = _build_three_generations()
        graph = build_graph(store, None, OWNER)
        assert graph.focus_id == "g1"
        assert graph.persons["g1"].generation == 0

    def test_empty_owner(self) -> None:
        graph = build_graph(TreeStore(), None, OWNER)
        assert graph.is_empty
        assert graph.focus_id is None
        assert graph.nodes == []

    def test_unknown_focus(self) -> None:
        store = _build_three_generations()
        with pytest.raises(NotFoundError):
            build_graph(store, "missing", OWNER)

    def test_owner_isolation(self) -> None:
        store = _build_three_generations()
        _make_person(store, "stranger", owner_id="other", parent_ids=["child"])
        _make_person(store, "other_root", owner_id="other")
        graph = build_graph(store, "child", OWNER)
        assert "stranger" not in graph.persons
        assert graph.persons["child"].hidden_descendant_count == 0
        with pytest.raises(NotFoundError):
            build_graph(store, "child", "other")


class TestExpansion:
    def _build_chain(self) -> TreeStore:
        store = TreeStore()
        _make_person(store, "grandparent")
        _make_person(store, "parent", parent_ids=["grandparent"])
        _make_person(store, "focus", parent_ids=["parent"])
        return store

    def test_unexpanded_intermediate_stops_traversal(self) -> None:
        store = self._build_chain()
        expansion = ExpansionConfig(expanded_ids={"focus"})
        graph = build_graph(store, "focus", OWNER, expansion=expansion)
        assert set(graph.persons) == {"focus", "parent"}
        assert graph.persons["parent"].hidden_ancestor_count == 1
        assert not graph.persons["parent"].expanded
        assert graph.persons["focus"].expanded

    def test_expanded_intermediate(self) -> None:
        store = self._build_chain()
        expansion = ExpansionConfig(expanded_ids={"focus", "parent"})
        graph = build_graph(store, "focus", OWNER, expansion=expansion)
        assert set(graph.persons) == {"focus", "parent", "grandparent"}
        assert graph.persons["parent"].hidden_ancestor_count == 0

    def test_full_policy(self) -> None:
        store = self._build_chain()
        expansion = ExpansionConfig(policy=TraversalPolicy.FULL)
        graph = build_graph(store, "focus", OWNER, expansion=expansion)
        assert len(graph.persons) == 3

    def test_hide_ancestors(self) -> None:
        store = self._build_chain()
        expansion = ExpansionConfig(policy=TraversalPolicy.FULL, hide_ancestors={"focus"})
        graph = build_graph(store, "focus", OWNER, expansion=expansion)
        assert set(graph.persons) == {"focus"}
        assert graph.persons["focus"].hidden_ancestor_count == 1

    def test_hide_descendants(self) -> None:
        store = self._build_chain()
        expansion = ExpansionConfig(policy=TraversalPolicy.FULL, hide_descendants={"grandparent"})
        graph = build_graph(store, "grandparent", OWNER, expansion=expansion)
        assert set(graph.persons) == {"grandparent"}
        assert graph.persons["grandparent"].hidden_descendant_count == 1

    def test_partners_shown_for_unexpanded(self) -> None:
        """展開していない人物でもパートナーは表示し、子は隠す。"""
        store = _build_three_generations()
        expansion = ExpansionConfig(expanded_ids={"child"})
        graph = build_graph(store, "child", OWNER, expansion=expansion)
        assert set(graph.persons) == {"child", "p1", "p2"}
        assert graph.persons["p1"].hidden_ancestor_count == 2


class TestVirtualUnions:
    def test_legacy_parents_grouped(self) -> None:
        """旧 parents だけを持つ子は2人の親の推定 Union にまとめる。"""
        store = TreeStore()
        _make_person(store, "dad")
        _make_person(store, "mom", Gender.FEMALE)
        _make_person(store, "kid1", parents=["dad", "mom"])
        _make_person(store, "kid2", parents=["mom", "dad"])

        graph = build_graph(store, "dad", OWNER)
        assert set(graph.persons) == {"dad", "mom", "kid1", "kid2"}
        assert list(graph.unions) == ["v-dad-mom"]
        union = graph.unions["v-dad-mom"]
        assert union.source is UnionSource.VIRTUAL
        assert union.partner_ids == ["dad", "mom"]
        assert sorted(union.children_ids) == ["kid1", "kid2"]
        assert union.generation == 0

    def test_legacy_spouse_without_children(self) -> None:
        store = TreeStore()
        _make_person(store, "a", spouse=["b"])
        _make_person(store, "b", spouse=["a"])
        graph = build_graph(store, "a", OWNER)
        assert set(graph.persons) == {"a", "b"}
        assert graph.unions["v-a-b"].children_ids == []

    def test_real_union_preferred(self) -> None:
        """同じ組の保存済み Union があれば推定 Union は作らない。"""
        store = TreeStore()
        _make_person(store, "a")
        _make_person(store, "b")
        union = create_union(store, "a", "b", OWNER)
        _make_person(store, "c", parent_ids=["a", "b"])

        graph = build_graph(store, "a", OWNER)
        assert list(graph.unions) == [union.id]
        assert graph.unions[union.id].children_ids == ["c"]
        # ストアの Union は変わらない
        assert store.require_union(union.id, OWNER).children_ids == []

    def test_adoptive_parent_not_paired(self) -> None:
        """養親は実親と同じ推定 Union にまとめず、それぞれ片親の枠に入れる。"""
        store = TreeStore()
        _make_person(store, "x")
        _make_person(store, "a", Gender.FEMALE)
        store.add_person(
            Person(
                id="k",
                owner_id=OWNER,
                first_name="k",
                parent_refs=[ParentRef("x"), ParentRef("a", RelationshipType.ADOPTIVE)],
            )
        )

        graph = build_graph(store, "x", OWNER, expansion=FULL)
        assert set(graph.persons) == {"x", "a", "k"}
        assert "v-a-x" not in graph.unions
        assert graph.unions["v-x"].children_ids == ["k"]
        assert graph.unions["v-a"].children_ids == ["k"]

    def test_biological_pair_preferred_over_step_parent(self) -> None:
        store = TreeStore()
        for pid in ("a", "x", "y"):
            _make_person(store, pid)
        store.add_person(
            Person(
                id="k",
                owner_id=OWNER,
                first_name="k",
                parent_refs=[
                    ParentRef("a", RelationshipType.STEP),
                    ParentRef("x"),
                    ParentRef("y"),
                ],
            )
        )

        graph = build_graph(store, "x", OWNER, expansion=FULL)
        assert graph.unions["v-x-y"].children_ids == ["k"]
        assert "v-a-x" not in graph.unions
        assert "v-a-y" not in graph.unions


class TestSelfReferences:
    def test_self_reference_skipped(self) -> None:
        person = Person(
            id="a",
            owner_id=OWNER,
            first_name="a",
            parent_refs=[ParentRef("a"), ParentRef("p")],
            parents=["a", "q"],
        )
        assert resolve_parents(person) == ["p", "q"]

    def test_self_child_skipped(self) -> None:
        person = Person(id="a", owner_id=OWNER, first_name="a", children=["a", "c"])
        assert resolve_children(person, referencing=[person]) == ["c"]
