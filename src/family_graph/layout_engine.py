"""部分グラフの各ノードに座標を割り当て、描画用のエッジを生成する。

座標系は Y 軸下向きで、注目人物の世代が y=0、祖先は負、子孫は正になる。
人物は世代ごとに一定間隔で左右に並べ、Union は人物の配置後に
パートナーの中間に置く。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import cmp_to_key
from typing import Any

from family_graph.graph_builder import FamilyGraph, PersonNode, UnionNode
from family_graph.models import RelationshipType
from family_graph.relations import classify_child_relationship, resolve_parents

log = logging.getLogger(__name__)


@dataclass
class LayoutSettings:
    """配置パラメータ。1回のレイアウト計算の中では一定。"""

    x_spacing: float = 300.0  # 隣り合う人物の中心間距離
    y_spacing: float = 200.0  # 世代間の距離
    node_width: float = 250.0
    node_height: float = 100.0
    union_size: float = 12.0
    single_parent_offset: float = 0.3  # 片親 Union の x_spacing に対するずれ
    sibling_threshold: float = 10.0  # 親の平均Xがこの差未満なら生年順で並べる


class EdgeType(Enum):
    PARTNER = "partner"
    CHILD = "child"


@dataclass
class NodeLayout:
    """ノードのレイアウト情報。"""

    id: str
    node: PersonNode | UnionNode
    cx: float  # 中心X
    cy: float  # 中心Y
    width: float
    height: float

    @property
    def kind(self) -> str:
        return self.node.kind

    @property
    def generation(self) -> int:
        return self.node.generation

    @property
    def left(self) -> float:
        return self.cx - self.width / 2

    @property
    def right(self) -> float:
        return self.cx + self.width / 2

    @property
    def top(self) -> float:
        return self.cy - self.height / 2

    @property
    def bottom(self) -> float:
        return self.cy + self.height / 2

    def to_dict(self) -> dict[str, Any]:
        data = self.node.to_dict()
        data.update(x=self.cx, y=self.cy, width=self.width, height=self.height)
        return data


@dataclass
class EdgeLayout:
    """エッジのレイアウト情報。

    パートナー線は人物 → Union、親子線は Union → 子の向き。
    """

    tail: str
    head: str
    type: EdgeType
    relationship: RelationshipType | None = None
    points: list[tuple[float, float]] = field(default_factory=list)

    @property
    def id(self) -> str:
        return f"{self.type.value}-{self.tail}-{self.head}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "from": self.tail,
            "to": self.head,
            "type": self.type.value,
            "relationship": self.relationship.value if self.relationship else None,
            "points": [list(p) for p in self.points],
        }


@dataclass
class GraphLayout:
    """グラフ全体のレイアウト情報。"""

    nodes: dict[str, NodeLayout] = field(default_factory=dict)
    edges: list[EdgeLayout] = field(default_factory=list)

    def bounds(self) -> tuple[float, float, float, float]:
        """(left, top, right, bottom) を返す。ノードが無い場合は全て 0。"""
        if not self.nodes:
            return (0.0, 0.0, 0.0, 0.0)
        return (
            min(n.left for n in self.nodes.values()),
            min(n.top for n in self.nodes.values()),
            max(n.right for n in self.nodes.values()),
            max(n.bottom for n in self.nodes.values()),
        )

    @property
    def width(self) -> float:
        left, _, right, _ = self.bounds()
        return right - left

    @property
    def height(self) -> float:
        _, top, _, bottom = self.bounds()
        return bottom - top

    def to_dict(self) -> dict[str, Any]:
        return {
            "nodes": [n.to_dict() for n in self.nodes.values()],
            "edges": [e.to_dict() for e in self.edges],
        }


# ---------------------------------------------------------------------------
# 世代内の並び順
# ---------------------------------------------------------------------------


def _birth_key(node: PersonNode) -> int:
    # 生年月日が無い人物は最も早い扱い
    birth = node.person.birth_date
    return birth.toordinal() if birth is not None else 0


@dataclass
class _Chain:
    """パートナー関係で連結した人物と Union の並び。"""

    items: list[PersonNode | UnionNode]
    ancestry_x: float | None
    birth: int


def _build_chains(
    persons: list[PersonNode],
    unions: list[UnionNode],
) -> tuple[list[list[PersonNode | UnionNode]], list[UnionNode]]:
    """世代内の人物を、パートナー関係で連結したチェーンに分ける。

    再婚などで ``パートナー - Union - 人物 - Union - パートナー`` と
    連なる場合も一続きに並べる。各チェーンは端の人物（Union が1つ以下）から
    たどり始める。

    Returns:
        (チェーンのリスト, どの人物にも属さない Union のリスト)
    """
    seed = sorted(persons, key=_birth_key)
    rank = {p.id: i for i, p in enumerate(seed)}
    by_id = {p.id: p for p in seed}

    unions_of: dict[str, list[UnionNode]] = {p.id: [] for p in seed}
    for union in unions:
        for partner_id in union.partner_ids:
            if partner_id in unions_of:
                unions_of[partner_id].append(union)

    visited_persons: set[str] = set()
    visited_unions: set[str] = set()
    chains: list[list[PersonNode | UnionNode]] = []

    for person in seed:
        if person.id in visited_persons:
            continue

        # 連結成分を集め、端の人物を探す
        component: set[str] = {person.id}
        pending = [person.id]
        while pending:
            pid = pending.pop()
            for union in unions_of[pid]:
                for other in union.partner_ids:
                    if other in by_id and other not in component:
                        component.add(other)
                        pending.append(other)
        ends = [pid for pid in component if len(unions_of[pid]) <= 1]
        start = min(ends, key=rank.__getitem__) if ends else person.id

        chain: list[PersonNode | UnionNode] = [by_id[start]]
        visited_persons.add(start)
        stack = [(start, iter(unions_of[start]))]
        while stack:
            pid, remaining = stack[-1]
            union = next(remaining, None)
            if union is None:
                stack.pop()
                continue
            if union.id in visited_unions:
                continue
            visited_unions.add(union.id)
            chain.append(union)
            for other in union.partner_ids:
                if other != pid and other in by_id and other not in visited_persons:
                    visited_persons.add(other)
                    chain.append(by_id[other])
                    stack.append((other, iter(unions_of[other])))
                    break
        chains.append(chain)

    orphans = [u for u in unions if u.id not in visited_unions]
    return chains, orphans


def _score_chain(items: list[PersonNode | UnionNode], placed_x: dict[str, float]) -> _Chain:
    parent_xs: list[float] = []
    births: list[int] = []
    for item in items:
        if not isinstance(item, PersonNode):
            continue
        if item.person.birth_date is not None:
            births.append(_birth_key(item))
        for parent_id in resolve_parents(item.person):
            if parent_id in placed_x:
                parent_xs.append(placed_x[parent_id])
    return _Chain(
        items=items,
        ancestry_x=sum(parent_xs) / len(parent_xs) if parent_xs else None,
        birth=min(births) if births else 0,
    )


def order_layer(
    persons: list[PersonNode],
    unions: list[UnionNode],
    placed_x: dict[str, float],
    settings: LayoutSettings,
) -> list[PersonNode | UnionNode]:
    """1世代分のノードを左から右への並び順にして返す。

    親が既に配置されているチェーンは親の平均Xの順に並べ、差が
    sibling_threshold 未満なら生年順にする。親が配置されていない
    チェーンはその後ろに生年順で並べる。
    """
    chains, orphans = _build_chains(persons, unions)
    scored = [_score_chain(items, placed_x) for items in chains]

    def compare(a: _Chain, b: _Chain) -> int:
        if a.ancestry_x is not None and b.ancestry_x is not None:
            if abs(a.ancestry_x - b.ancestry_x) < settings.sibling_threshold:
                return a.birth - b.birth
            return -1 if a.ancestry_x < b.ancestry_x else 1
        if a.ancestry_x is not None:
            return -1
        if b.ancestry_x is not None:
            return 1
        return a.birth - b.birth

    ordered: list[PersonNode | UnionNode] = []
    for chain in sorted(scored, key=cmp_to_key(compare)):
        ordered.extend(chain.items)
    ordered.extend(orphans)
    return ordered


# ---------------------------------------------------------------------------
# 座標の割り当て
# ---------------------------------------------------------------------------


def _place_union(
    union: UnionNode,
    layout: GraphLayout,
    settings: LayoutSettings,
    fallback_x: float,
) -> float:
    partners = [layout.nodes[pid] for pid in union.partner_ids if pid in layout.nodes]
    if len(partners) >= 2:
        return (partners[0].cx + partners[1].cx) / 2
    if len(partners) == 1:
        return partners[0].cx + settings.x_spacing * settings.single_parent_offset
    return fallback_x


def compute_layout(graph: FamilyGraph, settings: LayoutSettings | None = None) -> GraphLayout:
    """部分グラフのレイアウトを計算する。

    Args:
        graph: build_graph の結果
        settings: 配置パラメータ

    Returns:
        GraphLayout。存在しないノードを指すエッジは含まない
    """
    settings = settings or LayoutSettings()
    layout = GraphLayout()

    layers: dict[int, tuple[list[PersonNode], list[UnionNode]]] = {}
    for person in graph.persons.values():
        layers.setdefault(person.generation, ([], []))[0].append(person)
    for union in graph.unions.values():
        layers.setdefault(union.generation, ([], []))[1].append(union)

    placed_x: dict[str, float] = {}
    ordered_unions: list[tuple[UnionNode, float]] = []

    for generation in sorted(layers):
        persons, unions = layers[generation]
        ordered = order_layer(persons, unions, placed_x, settings)

        # Union は枠を消費しない
        count = sum(1 for item in ordered if isinstance(item, PersonNode))
        current_x = -max(0, count - 1) * settings.x_spacing / 2
        y = generation * settings.y_spacing

        for item in ordered:
            if isinstance(item, PersonNode):
                layout.nodes[item.id] = NodeLayout(
                    id=item.id,
                    node=item,
                    cx=current_x,
                    cy=y,
                    width=settings.node_width,
                    height=settings.node_height,
                )
                placed_x[item.id] = current_x
                current_x += settings.x_spacing
            else:
                ordered_unions.append((item, current_x - settings.x_spacing / 2))

    # 全人物の配置後に Union を置く（世代をまたぐパートナーにも対応）
    for union, fallback_x in ordered_unions:
        layout.nodes[union.id] = NodeLayout(
            id=union.id,
            node=union,
            cx=_place_union(union, layout, settings, fallback_x),
            cy=union.generation * settings.y_spacing,
            width=settings.union_size,
            height=settings.union_size,
        )

    layout.edges = _build_edges(graph, layout)
    fix_edge_endpoints(layout)
    return layout


# ---------------------------------------------------------------------------
# エッジ
# ---------------------------------------------------------------------------


def _build_edges(graph: FamilyGraph, layout: GraphLayout) -> list[EdgeLayout]:
    edges: list[EdgeLayout] = []
    for union in graph.unions.values():
        union_layout = layout.nodes.get(union.id)
        if union_layout is None:
            continue

        for partner_id in union.partner_ids:
            partner = layout.nodes.get(partner_id)
            if partner is None:
                log.debug("dropping partner edge %s -> %s", partner_id, union.id)
                continue
            edges.append(
                EdgeLayout(
                    tail=partner_id,
                    head=union.id,
                    type=EdgeType.PARTNER,
                    points=[(partner.cx, partner.cy), (union_layout.cx, union_layout.cy)],
                )
            )

        for child_id in union.children_ids:
            child = layout.nodes.get(child_id)
            if child is None or not isinstance(child.node, PersonNode):
                log.debug("dropping child edge %s -> %s", union.id, child_id)
                continue
            mid_y = (union_layout.cy + child.top) / 2
            edges.append(
                EdgeLayout(
                    tail=union.id,
                    head=child_id,
                    type=EdgeType.CHILD,
                    relationship=classify_child_relationship(child.node.person, union.partner_ids),
                    points=[
                        (union_layout.cx, union_layout.cy),
                        (union_layout.cx, mid_y),
                        (child.cx, mid_y),
                        (child.cx, child.cy),
                    ],
                )
            )
    return edges


def fix_edge_endpoints(layout: GraphLayout) -> None:
    """エッジの端点を人物カードの境界に補正する。

    Union ノードは点として扱い、中心のままにする。
    """
    for edge in layout.edges:
        tail_node = layout.nodes.get(edge.tail)
        head_node = layout.nodes.get(edge.head)

        if tail_node and edge.points:
            edge.points[0] = _snap_to_node_border(
                tail_node, edge.points[1] if len(edge.points) > 1 else edge.points[0]
            )

        if head_node and edge.points:
            edge.points[-1] = _snap_to_node_border(
                head_node,
                edge.points[-2] if len(edge.points) > 1 else edge.points[-1],
            )


def _snap_to_node_border(
    node: NodeLayout, toward: tuple[float, float]
) -> tuple[float, float]:
    """ノードの境界上で、toward 方向の辺の中央を返す。"""
    if node.kind == "union":
        return (node.cx, node.cy)

    dx = toward[0] - node.cx
    dy = toward[1] - node.cy

    if abs(dy) > abs(dx):
        if dy > 0:
            return (node.cx, node.bottom)
        else:
            return (node.cx, node.top)
    else:
        if dx > 0:
            return (node.right, node.cy)
        else:
            return (node.left, node.cy)
