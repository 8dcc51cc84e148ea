"""Pillow を使って家系図を1枚の画像に描画する。

レイアウト座標はどの世代も y=0 を基準に正負に広がるため、
境界ボックスの左上が余白の位置に来るようにずらして描く。
"""

from __future__ import annotations

from pathlib import Path

from PIL import Image, ImageDraw, ImageFont

from family_graph.config import AppConfig
from family_graph.graph_builder import PersonNode
from family_graph.layout_engine import EdgeLayout, EdgeType, GraphLayout, NodeLayout
from family_graph.models import Gender, RelationshipType

Point = tuple[float, float]


def _get_font(size: int) -> ImageFont.FreeTypeFont | ImageFont.ImageFont:
    """フォントを取得する。システムフォントが見つからない場合はデフォルトを使用。"""
    # (パス, ttcインデックス) のリスト。None はデフォルトインデックス。
    font_candidates: list[tuple[str, int | None]] = [
        ("/System/Library/Fonts/ヒラギノ角ゴシック W6.ttc", None),
        ("/System/Library/Fonts/ヒラギノ角ゴシック W3.ttc", None),
        ("/usr/share/fonts/opentype/noto/NotoSansCJK-Regular.ttc", None),
        ("/usr/share/fonts/truetype/noto/NotoSansCJK-Regular.ttc", None),
        ("/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf", None),
    ]
    for font_path, index in font_candidates:
        try:
            if index is not None:
                return ImageFont.truetype(font_path, size, index=index)
            return ImageFont.truetype(font_path, size)
        except OSError:
            continue
    return ImageFont.load_default()


def _interpolate_point(start: Point, end: Point, t: float) -> Point:
    """2点間を線形補間する。t=0で始点、t=1で終点。"""
    return (
        start[0] + (end[0] - start[0]) * t,
        start[1] + (end[1] - start[1]) * t,
    )


def _dash_segments(start: Point, end: Point, dash: float) -> list[tuple[Point, Point]]:
    """線分を dash 間隔の破線に分割する。"""
    length = ((end[0] - start[0]) ** 2 + (end[1] - start[1]) ** 2) ** 0.5
    if length == 0 or dash <= 0:
        return [(start, end)]

    segments: list[tuple[Point, Point]] = []
    pos = 0.0
    while pos < length:
        stop = min(pos + dash, length)
        segments.append(
            (_interpolate_point(start, end, pos / length), _interpolate_point(start, end, stop / length))
        )
        pos += dash * 2
    return segments


def _format_years(node: PersonNode) -> str:
    person = node.person
    if person.birth_date is None and person.death_date is None:
        return ""
    birth = str(person.birth_date.year) if person.birth_date else "?"
    if person.death_date is None:
        return birth
    return f"{birth} – {person.death_date.year}"


class FrameDrawer:
    """家系図画像の描画を管理するクラス。"""

    def __init__(self, layout: GraphLayout, config: AppConfig | None = None) -> None:
        self.layout = layout
        self.config = config or AppConfig()
        self.font_name = _get_font(self.config.dimensions.font_size_name)
        self.font_dates = _get_font(self.config.dimensions.font_size_dates)

        left, top, _, _ = layout.bounds()
        padding = self.config.dimensions.padding
        self.offset_x = padding - left
        self.offset_y = padding - top
        # キャンバスサイズ (余白を含む)
        self.canvas_width = int(layout.width + padding * 2)
        self.canvas_height = int(layout.height + padding * 2)

    def _shift(self, point: Point) -> Point:
        return (point[0] + self.offset_x, point[1] + self.offset_y)

    def draw(self) -> Image.Image:
        """全ノードと全エッジを描画した画像を返す。"""
        img = Image.new("RGB", (self.canvas_width, self.canvas_height), self.config.colors.background)
        draw = ImageDraw.Draw(img)

        # エッジを先に描画（ノードの下に表示）
        for edge in self.layout.edges:
            self._draw_edge(draw, edge)

        for node in self.layout.nodes.values():
            if isinstance(node.node, PersonNode):
                self._draw_person_node(draw, node, node.node)
            else:
                self._draw_union_node(draw, node)

        return img

    def _person_colors(
        self, gender: Gender
    ) -> tuple[tuple[int, int, int], tuple[int, int, int]]:
        colors = self.config.colors
        if gender is Gender.MALE:
            return colors.male_fill, colors.male_border
        if gender is Gender.FEMALE:
            return colors.female_fill, colors.female_border
        return colors.other_fill, colors.other_border

    def _draw_person_node(
        self, draw: ImageDraw.ImageDraw, node: NodeLayout, person_node: PersonNode
    ) -> None:
        """人物ブロックを描画する。"""
        x0, y0 = self._shift((node.left, node.top))
        x1, y1 = self._shift((node.right, node.bottom))

        colors = self.config.colors
        dims = self.config.dimensions
        fill, border = self._person_colors(person_node.person.gender)

        # 角丸矩形を描画
        draw.rounded_rectangle(
            [x0, y0, x1, y1],
            radius=dims.corner_radius,
            fill=fill,
            outline=border,
            width=dims.border_width,
        )

        lines = [(person_node.person.display_name, self.font_name)]
        years = _format_years(person_node)
        if years:
            lines.append((years, self.font_dates))

        # 複数行をまとめて上下中央に置く
        sizes = []
        for text, font in lines:
            bbox = draw.textbbox((0, 0), text, font=font)
            sizes.append((bbox[2] - bbox[0], bbox[3] - bbox[1]))
        gap = 6
        total_h = sum(h for _, h in sizes) + gap * (len(lines) - 1)
        y = (y0 + y1) / 2 - total_h / 2
        for (text, font), (w, h) in zip(lines, sizes):
            draw.text(((x0 + x1) / 2 - w / 2, y), text, fill=colors.text, font=font)
            y += h + gap

    def _draw_union_node(self, draw: ImageDraw.ImageDraw, node: NodeLayout) -> None:
        cx, cy = self._shift((node.cx, node.cy))
        r = node.width / 2
        draw.ellipse([cx - r, cy - r, cx + r, cy + r], fill=self.config.colors.union_fill)

    def _draw_edge(self, draw: ImageDraw.ImageDraw, edge: EdgeLayout) -> None:
        """エッジ（線）を描画する。実親以外の親子線は破線。"""
        if len(edge.points) < 2:
            return

        colors = self.config.colors
        dims = self.config.dimensions
        if edge.type is EdgeType.PARTNER:
            color = colors.partner_line
            width = dims.line_width_partner
        else:
            color = colors.child_line
            width = dims.line_width_child
        dashed = edge.relationship not in (None, RelationshipType.BIOLOGICAL)

        points = [self._shift(p) for p in edge.points]
        for start, end in zip(points, points[1:]):
            if dashed:
                for seg_start, seg_end in _dash_segments(start, end, dims.dash_length):
                    draw.line([seg_start, seg_end], fill=color, width=width)
            else:
                draw.line([start, end], fill=color, width=width)


def draw_layout(
    layout: GraphLayout, output_path: str | Path, config: AppConfig | None = None
) -> Path:
    """レイアウトを PNG 画像として保存する。"""
    output_path = Path(output_path)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    FrameDrawer(layout, config).draw().save(output_path)
    return output_path
