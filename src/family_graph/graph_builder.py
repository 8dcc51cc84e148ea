"""注目人物を起点に、表示する人物と Union の部分グラフを構築する。

幅優先探索で親（世代 -1）、パートナー（同世代）、子（世代 +1）をたどる。
展開状態によって探索範囲を制限し、表示されなかった親・子の数を
各人物ノードに記録する。
"""

from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable

from family_graph.models import Person, RelationshipType, Union, UnionType, union_key
from family_graph.relations import (
    relationship_to,
    resolve_children,
    resolve_parents,
    resolve_partners,
)
from family_graph.store import NotFoundError, TreeStore

log = logging.getLogger(__name__)

DEFAULT_MAX_NODES = 5000
VIRTUAL_PREFIX = "v-"


class TraversalPolicy(Enum):
    """探索方針。"""

    EXPANSION = "expansion"  # 展開済みの人物からのみ親・子へ進む
    FULL = "full"  # 全員を展開済みとして扱う


class UnionSource(Enum):
    REAL = "real"
    VIRTUAL = "virtual"


@dataclass
class ExpansionConfig:
    """探索範囲の指定。

    Attributes:
        expanded_ids: 展開する人物ID（注目人物は常に展開される）
        hide_ancestors: 親をたどらない人物ID
        hide_descendants: 子をたどらない人物ID
        policy: 探索方針
    """

    expanded_ids: set[str] = field(default_factory=set)
    hide_ancestors: set[str] = field(default_factory=set)
    hide_descendants: set[str] = field(default_factory=set)
    policy: TraversalPolicy = TraversalPolicy.EXPANSION


@dataclass
class PersonNode:
    """グラフ上の人物ノード。"""

    person: Person
    generation: int
    expanded: bool = False
    hidden_ancestor_count: int = 0
    hidden_descendant_count: int = 0

    @property
    def id(self) -> str:
        return self.person.id

    @property
    def kind(self) -> str:
        return "person"

    def to_dict(self) -> dict[str, Any]:
        data = self.person.to_dict()
        data.update(
            kind=self.kind,
            generation=self.generation,
            expanded=self.expanded,
            hidden_ancestor_count=self.hidden_ancestor_count,
            hidden_descendant_count=self.hidden_descendant_count,
        )
        return data


@dataclass
class UnionNode:
    """グラフ上の Union ノード。

    保存済みの Union（REAL）と、旧スキーマから推定した Union（VIRTUAL）を
    同じ形で扱う。
    """

    id: str
    partner_ids: list[str]
    children_ids: list[str]
    generation: int
    type: UnionType = UnionType.UNKNOWN
    source: UnionSource = UnionSource.REAL

    @property
    def kind(self) -> str:
        return "union"

    @classmethod
    def from_union(cls, union: Union, generation: int) -> UnionNode:
        return cls(
            id=union.id,
            partner_ids=list(union.partner_ids),
            children_ids=list(union.children_ids),
            generation=generation,
            type=union.type,
            source=UnionSource.REAL,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "generation": self.generation,
            "partner_ids": list(self.partner_ids),
            "children_ids": list(self.children_ids),
            "type": self.type.value,
            "virtual": self.source is UnionSource.VIRTUAL,
        }


@dataclass
class FamilyGraph:
    """探索結果。レイアウトエンジンの入力になる。"""

    focus_id: str | None
    persons: dict[str, PersonNode] = field(default_factory=dict)
    unions: dict[str, UnionNode] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.persons

    @property
    def nodes(self) -> list[PersonNode | UnionNode]:
        return [*self.persons.values(), *self.unions.values()]


def virtual_union_id(partner_ids: Iterable[str]) -> str:
    """推定 Union のID。パートナー組から決まるので、どこから到達しても同じになる。"""
    return VIRTUAL_PREFIX + "-".join(union_key(partner_ids))


def _other_biological_parent(child: Person, parent_id: str) -> str | None:
    """推定 Union で parent_id と組にする、子のもう一方の実親を返す。

    parent_id 自身が実親でない場合や、もう一方の実親がいない場合は None
    （片親の枠に入れる）。実親が複数いる場合はIDの小さい方を使う。
    """
    if relationship_to(child, parent_id) not in (None, RelationshipType.BIOLOGICAL):
        return None
    others = [
        p
        for p in resolve_parents(child)
        if p != parent_id and relationship_to(child, p) is RelationshipType.BIOLOGICAL
    ]
    return min(others) if others else None


@dataclass
class _ChildGroups:
    """1人の人物について、Union に属さない子をもう一方の親ごとにまとめたもの。"""

    person_id: str
    generation: int
    groups: dict[tuple[str, ...], list[str]]
    real_by_key: dict[tuple[str, ...], str]


class _Traversal:
    """1回の build_graph 呼び出しだけが使う探索状態。"""

    def __init__(
        self,
        store: TreeStore,
        owner_id: str,
        focus_id: str,
        expansion: ExpansionConfig,
        max_nodes: int,
    ) -> None:
        self.store = store
        self.owner_id = owner_id
        self.focus_id = focus_id
        self.expansion = expansion
        self.max_nodes = max_nodes

        self.queue: deque[tuple[str, int]] = deque()
        self.generation_of: dict[str, int] = {}
        self.persons: dict[str, PersonNode] = {}
        self.unions: dict[str, UnionNode] = {}
        self.child_groups: list[_ChildGroups] = []
        self.all_parents: dict[str, list[str]] = {}
        self.all_children: dict[str, list[str]] = {}
        self._exists: dict[str, bool] = {}

    def run(self) -> FamilyGraph:
        self._enqueue(self.focus_id, 0)
        while self.queue:
            if len(self.persons) >= self.max_nodes:
                log.warning(
                    "traversal from %s stopped at %d nodes (%d still queued)",
                    self.focus_id,
                    len(self.persons),
                    len(self.queue),
                )
                break
            person_id, generation = self.queue.popleft()
            person = self.store.get_person(person_id, self.owner_id)
            if person is None:
                log.debug("skipping unresolved person %s", person_id)
                continue
            self._visit(person, generation)

        self._add_virtual_unions()
        self._count_hidden()
        return FamilyGraph(focus_id=self.focus_id, persons=self.persons, unions=self.unions)

    def _enqueue(self, person_id: str, generation: int) -> None:
        # 世代は最初に積まれたときに確定する
        if person_id in self.generation_of:
            return
        self.generation_of[person_id] = generation
        self.queue.append((person_id, generation))

    def _is_expanded(self, person_id: str) -> bool:
        return (
            self.expansion.policy is TraversalPolicy.FULL
            or person_id == self.focus_id
            or person_id in self.expansion.expanded_ids
        )

    def _visit(self, person: Person, generation: int) -> None:
        pid = person.id
        expanded = self._is_expanded(pid)
        self.persons[pid] = PersonNode(person=person, generation=generation, expanded=expanded)

        # ---------- 親 ----------
        parents = resolve_parents(person)
        self.all_parents[pid] = parents
        if expanded and pid not in self.expansion.hide_ancestors:
            for parent_id in parents:
                self._enqueue(parent_id, generation - 1)

        # ---------- パートナーと子 ----------
        # 展開していない人物でも Union（パートナー）は表示する
        descend = expanded and pid not in self.expansion.hide_descendants
        unions = self.store.find_unions(self.owner_id, partner_id=pid)
        for union in unions:
            if union.id not in self.unions:
                self.unions[union.id] = UnionNode.from_union(union, generation)
            for partner_id in union.partner_ids:
                if partner_id != pid:
                    self._enqueue(partner_id, generation)
            if descend:
                for child_id in union.children_ids:
                    self._enqueue(child_id, generation + 1)

        # ---------- Union に属さない子（旧スキーマ・parent_refs のみ） ----------
        referencing = self.store.find_persons(self.owner_id, parent_id=pid)
        children = resolve_children(person, unions, referencing)
        self.all_children[pid] = children

        in_unions = {cid for union in unions for cid in union.children_ids}
        by_id = {child.id: child for child in referencing}
        groups: dict[tuple[str, ...], list[str]] = {}
        for child_id in children:
            if child_id in in_unions:
                continue
            child = by_id.get(child_id) or self.store.get_person(child_id, self.owner_id)
            if child is None:
                continue
            other = _other_biological_parent(child, pid)
            key = union_key([pid] if other is None else [pid, other])
            groups.setdefault(key, []).append(child_id)
            if descend:
                self._enqueue(child_id, generation + 1)
                if other is not None:
                    self._enqueue(other, generation)

        real_by_key = {union.key: union.id for union in unions}
        for spouse_id in resolve_partners(person, unions):
            key = union_key([pid, spouse_id])
            if key not in real_by_key:
                groups.setdefault(key, [])
                self._enqueue(spouse_id, generation)

        if groups:
            self.child_groups.append(_ChildGroups(pid, generation, groups, real_by_key))

    def _add_virtual_unions(self) -> None:
        """探索後に、表示される人物だけを使って推定 Union を作る。"""
        visible = self.persons.keys()
        for entry in self.child_groups:
            for key, children in entry.groups.items():
                shown = [cid for cid in children if cid in visible]

                real_id = entry.real_by_key.get(key)
                if real_id is not None:
                    # 同じ組の保存済み Union を優先し、子はそこにぶら下げて表示する
                    node = self.unions[real_id]
                    for cid in shown:
                        if cid not in node.children_ids:
                            node.children_ids.append(cid)
                    continue

                if not shown and not (len(key) == 2 and all(p in visible for p in key)):
                    continue

                vid = virtual_union_id(key)
                node = self.unions.get(vid)
                if node is None:
                    self.unions[vid] = UnionNode(
                        id=vid,
                        partner_ids=list(key),
                        children_ids=shown,
                        generation=entry.generation,
                        source=UnionSource.VIRTUAL,
                    )
                else:
                    for cid in shown:
                        if cid not in node.children_ids:
                            node.children_ids.append(cid)

    def _exists_for_owner(self, person_id: str) -> bool:
        if person_id in self.persons:
            return True
        if person_id not in self._exists:
            self._exists[person_id] = self.store.get_person(person_id, self.owner_id) is not None
        return self._exists[person_id]

    def _count_hidden(self) -> None:
        for pid, node in self.persons.items():
            node.hidden_ancestor_count = sum(
                1
                for parent_id in self.all_parents.get(pid, [])
                if parent_id not in self.persons and self._exists_for_owner(parent_id)
            )
            node.hidden_descendant_count = sum(
                1
                for child_id in self.all_children.get(pid, [])
                if child_id not in self.persons and self._exists_for_owner(child_id)
            )


def build_graph(
    store: TreeStore,
    focus_id: str | None,
    owner_id: str,
    expansion: ExpansionConfig | None = None,
    max_nodes: int = DEFAULT_MAX_NODES,
) -> FamilyGraph:
    """注目人物を中心とした部分グラフを構築する。

    Args:
        store: ストア
        focus_id: 注目人物ID。None の場合は所有者の最初の人物
        owner_id: 所有者ID
        expansion: 探索範囲。None の場合は注目人物だけを展開する
        max_nodes: 人物ノード数の上限（循環データ対策）

    Returns:
        FamilyGraph。所有者に人物が1人もいない場合は空のグラフ

    Raises:
        NotFoundError: 注目人物が所有者の範囲に存在しない
    """
    if store.count_persons(owner_id) == 0:
        return FamilyGraph(focus_id=None)

    if focus_id is None:
        focus_id = store.find_persons(owner_id)[0].id
    elif store.get_person(focus_id, owner_id) is None:
        raise NotFoundError(f"Person not found: {focus_id}")

    if expansion is None:
        expansion = ExpansionConfig()

    graph = _Traversal(store, owner_id, focus_id, expansion, max_nodes).run()
    log.info(
        "built graph around %s: %d person(s), %d union(s)",
        focus_id,
        len(graph.persons),
        len(graph.unions),
    )
    return graph
