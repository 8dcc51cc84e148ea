"""計算済みレイアウトを Graphviz で画像・DOT ソースとして出力する。

座標はレイアウトエンジンの値を ``pos="x,y!"`` で固定し、
``neato -n2`` で配置を変えずに描画する。
"""

from __future__ import annotations

from pathlib import Path

import graphviz

from family_graph.config import AppConfig
from family_graph.graph_builder import PersonNode
from family_graph.layout_engine import EdgeLayout, EdgeType, GraphLayout, NodeLayout
from family_graph.models import Gender, RelationshipType

# レイアウト座標 1 単位を 1 ポイントとして扱う
POINTS_PER_INCH = 72.0


def _hex(rgb: tuple[int, int, int]) -> str:
    return "#{:02x}{:02x}{:02x}".format(*rgb)


def _format_label(node: PersonNode) -> str:
    # DOT の改行エスケープ（\n）で行を分ける
    person = node.person
    years = ""
    if person.birth_date or person.death_date:
        birth = str(person.birth_date.year) if person.birth_date else "?"
        death = str(person.death_date.year) if person.death_date else ""
        years = f"\\n{birth}–{death}" if death else f"\\n{birth}"
    hidden = ""
    if node.hidden_ancestor_count or node.hidden_descendant_count:
        hidden = f"\\n▲{node.hidden_ancestor_count} ▼{node.hidden_descendant_count}"
    return f"{person.display_name}{years}{hidden}"


def _person_colors(node: PersonNode, config: AppConfig) -> tuple[str, str]:
    colors = config.colors
    gender = node.person.gender
    if gender is Gender.MALE:
        return _hex(colors.male_fill), _hex(colors.male_border)
    if gender is Gender.FEMALE:
        return _hex(colors.female_fill), _hex(colors.female_border)
    return _hex(colors.other_fill), _hex(colors.other_border)


def _pos(node: NodeLayout) -> str:
    # Graphviz は Y 軸上向き
    return f"{node.cx:.1f},{-node.cy:.1f}!"


def _add_edge(dot: graphviz.Digraph, edge: EdgeLayout, config: AppConfig) -> None:
    colors = config.colors
    if edge.type is EdgeType.PARTNER:
        dot.edge(
            edge.tail,
            edge.head,
            color=_hex(colors.partner_line),
            penwidth=str(config.dimensions.line_width_partner / 2),
        )
        return
    style = "solid" if edge.relationship in (None, RelationshipType.BIOLOGICAL) else "dashed"
    dot.edge(
        edge.tail,
        edge.head,
        color=_hex(colors.child_line),
        penwidth=str(config.dimensions.line_width_child / 2),
        style=style,
        tooltip=edge.relationship.value if edge.relationship else "",
    )


def build_dot(layout: GraphLayout, config: AppConfig | None = None) -> graphviz.Digraph:
    """GraphLayout から座標固定の Graphviz Digraph を生成する。"""
    config = config or AppConfig()

    dot = graphviz.Digraph(
        "family_graph",
        engine="neato",
        graph_attr={
            "splines": "line",
            "bgcolor": _hex(config.colors.background),
            "pad": str(config.dimensions.padding / POINTS_PER_INCH),
        },
        node_attr={
            "fontname": "Helvetica",
            "fontsize": str(config.dimensions.font_size_name * 0.6),
            "fontcolor": _hex(config.colors.text),
        },
        edge_attr={
            "dir": "none",
        },
    )

    for node in layout.nodes.values():
        if isinstance(node.node, PersonNode):
            fill, border = _person_colors(node.node, config)
            dot.node(
                node.id,
                label=_format_label(node.node),
                pos=_pos(node),
                shape="box",
                style="filled,rounded",
                fillcolor=fill,
                color=border,
                width=f"{node.width / POINTS_PER_INCH:.3f}",
                height=f"{node.height / POINTS_PER_INCH:.3f}",
                fixedsize="true",
            )
        else:
            dot.node(
                node.id,
                label="",
                pos=_pos(node),
                shape="point",
                width=f"{node.width / POINTS_PER_INCH:.3f}",
                color=_hex(config.colors.union_fill),
            )

    for edge in layout.edges:
        _add_edge(dot, edge, config)

    return dot


def render_layout(
    layout: GraphLayout,
    output_path: str | Path,
    fmt: str = "png",
    config: AppConfig | None = None,
) -> Path:
    """レイアウトを画像ファイル（または DOT ソース）として出力する。

    Args:
        layout: compute_layout の結果
        output_path: 出力ファイルパス（例: output/tree.svg）
        fmt: 出力形式（"png" / "svg" / "dot"）
        config: 描画設定

    Returns:
        出力されたファイルのパス
    """
    output_path = Path(output_path)

    # 出力先ディレクトリの自動作成
    output_path.parent.mkdir(parents=True, exist_ok=True)

    dot = build_dot(layout, config)
    if fmt == "dot":
        output_path.write_text(dot.source, encoding="utf-8")
        return output_path

    dot.render(
        outfile=str(output_path),
        format=fmt,
        cleanup=True,
        quiet=True,
        neato_no_op=2,
    )

    return output_path
