"""UI 層に公開する操作。結果は JSON にそのまま変換できる dict で返す。"""

from __future__ import annotations

import logging
from typing import Any, Iterable

from family_graph.config import AppConfig
from family_graph.graph_builder import ExpansionConfig, TraversalPolicy, build_graph
from family_graph.layout_engine import GraphLayout, compute_layout
from family_graph.maintenance import repair_duplicate_unions
from family_graph.store import TreeStore

log = logging.getLogger(__name__)


def tree_layout(
    store: TreeStore,
    owner_id: str,
    focus_id: str | None = None,
    expanded_ids: Iterable[str] | None = None,
    hide_ancestors: Iterable[str] = (),
    hide_descendants: Iterable[str] = (),
    config: AppConfig | None = None,
) -> tuple[str | None, GraphLayout]:
    """部分グラフを構築してレイアウトまで計算する。

    expanded_ids を渡した場合は展開状態による制限付きで探索し、
    渡さない場合は設定の traversal.policy に従う。

    Returns:
        (注目人物ID, GraphLayout)。所有者に人物がいない場合は (None, 空のレイアウト)

    Raises:
        NotFoundError: 注目人物が存在しない
    """
    config = config or AppConfig()
    policy = TraversalPolicy.EXPANSION if expanded_ids is not None else config.traversal.policy
    expansion = ExpansionConfig(
        expanded_ids=set(expanded_ids or ()),
        hide_ancestors=set(hide_ancestors),
        hide_descendants=set(hide_descendants),
        policy=policy,
    )
    graph = build_graph(
        store,
        focus_id,
        owner_id,
        expansion=expansion,
        max_nodes=config.traversal.max_nodes,
    )
    return graph.focus_id, compute_layout(graph, config.layout)


def read_tree(
    store: TreeStore,
    owner_id: str,
    focus_id: str | None = None,
    expanded_ids: Iterable[str] | None = None,
    hide_ancestors: Iterable[str] = (),
    hide_descendants: Iterable[str] = (),
    config: AppConfig | None = None,
) -> dict[str, Any]:
    """家系図の表示データを返す。

    Returns:
        {"focus_id", "empty", "nodes", "edges"}。人物が1人もいない場合は
        empty=True で nodes / edges は空
    """
    resolved_focus, layout = tree_layout(
        store,
        owner_id,
        focus_id=focus_id,
        expanded_ids=expanded_ids,
        hide_ancestors=hide_ancestors,
        hide_descendants=hide_descendants,
        config=config,
    )
    data = layout.to_dict()
    data["focus_id"] = resolved_focus
    data["empty"] = resolved_focus is None
    return data


def repair_unions(store: TreeStore, owner_id: str) -> dict[str, int]:
    """重複 Union を修復し、件数を返す。"""
    result = repair_duplicate_unions(store, owner_id)
    log.info(
        "repair for %s: merged=%d deleted=%d",
        owner_id,
        result.merged_count,
        result.deleted_count,
    )
    return result.to_dict()
