"""設定ファイルの読み込みと設定値の管理。

TOML 形式の設定ファイルを読み込み、AppConfig として返す。
設定ファイルが存在しない場合はデフォルト値を使用する。
"""

from __future__ import annotations

import sys
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import NoReturn

from family_graph.graph_builder import DEFAULT_MAX_NODES, TraversalPolicy
from family_graph.layout_engine import LayoutSettings


@dataclass
class ColorConfig:
    """描画色の設定。"""

    background: tuple[int, int, int] = (250, 248, 243)
    male_fill: tuple[int, int, int] = (193, 216, 236)
    female_fill: tuple[int, int, int] = (253, 239, 242)
    other_fill: tuple[int, int, int] = (230, 230, 222)
    male_border: tuple[int, int, int] = (46, 79, 111)
    female_border: tuple[int, int, int] = (142, 53, 74)
    other_border: tuple[int, int, int] = (110, 110, 100)
    partner_line: tuple[int, int, int] = (197, 61, 67)
    child_line: tuple[int, int, int] = (89, 88, 87)
    union_fill: tuple[int, int, int] = (197, 61, 67)
    text: tuple[int, int, int] = (43, 43, 43)


@dataclass
class DimensionConfig:
    """描画パラメータの設定（レイアウト座標 1 単位 = 1 px）。"""

    padding: int = 80  # 図の周囲の余白 (px)
    line_width_partner: int = 4
    line_width_child: int = 3
    border_width: int = 3
    corner_radius: int = 16
    font_size_name: int = 22
    font_size_dates: int = 16
    dash_length: int = 12  # 実親以外の親子線の破線間隔 (px)


@dataclass
class TraversalConfig:
    """グラフ探索の設定。"""

    max_nodes: int = DEFAULT_MAX_NODES
    policy: TraversalPolicy = TraversalPolicy.EXPANSION


@dataclass
class AppConfig:
    """アプリケーション全体の設定。"""

    colors: ColorConfig = field(default_factory=ColorConfig)
    dimensions: DimensionConfig = field(default_factory=DimensionConfig)
    layout: LayoutSettings = field(default_factory=LayoutSettings)
    traversal: TraversalConfig = field(default_factory=TraversalConfig)


# ---------------------------------------------------------------------------
# バリデーション
# ---------------------------------------------------------------------------

_RGB_KEYS = (
    "background",
    "male_fill",
    "female_fill",
    "other_fill",
    "male_border",
    "female_border",
    "other_border",
    "partner_line",
    "child_line",
    "union_fill",
    "text",
)

_DIM_INT_KEYS = (
    "padding",
    "line_width_partner",
    "line_width_child",
    "border_width",
    "corner_radius",
    "font_size_name",
    "font_size_dates",
    "dash_length",
)

_LAYOUT_FLOAT_KEYS = (
    "x_spacing",
    "y_spacing",
    "node_width",
    "node_height",
    "union_size",
    "single_parent_offset",
    "sibling_threshold",
)


def _fail(message: str) -> NoReturn:
    print(f"設定エラー: {message}", file=sys.stderr)
    sys.exit(1)


def _validate_rgb(value: object, key: str) -> tuple[int, int, int]:
    """RGB 配列値を検証し tuple[int, int, int] に変換する。"""
    if not isinstance(value, list) or len(value) != 3:
        _fail(f"{key} は [R, G, B] 形式の3要素配列で指定してください")
    for i, v in enumerate(value):
        if not isinstance(v, int) or not (0 <= v <= 255):
            _fail(f"{key}[{i}] は 0〜255 の整数で指定してください")
    return (int(value[0]), int(value[1]), int(value[2]))


def _build_colors(data: dict[str, object]) -> ColorConfig:
    cfg = ColorConfig()
    for key in _RGB_KEYS:
        if key in data:
            setattr(cfg, key, _validate_rgb(data[key], f"style.colors.{key}"))
    return cfg


def _build_dimensions(data: dict[str, object]) -> DimensionConfig:
    cfg = DimensionConfig()
    for key in _DIM_INT_KEYS:
        if key in data:
            val = data[key]
            if not isinstance(val, int):
                _fail(f"style.dimensions.{key} は整数で指定してください")
            setattr(cfg, key, val)
    return cfg


def _build_layout(data: dict[str, object]) -> LayoutSettings:
    cfg = LayoutSettings()
    for key in _LAYOUT_FLOAT_KEYS:
        if key in data:
            val = data[key]
            if isinstance(val, bool) or not isinstance(val, (int, float)):
                _fail(f"layout.{key} は数値で指定してください")
            if val < 0:
                _fail(f"layout.{key} は 0 以上で指定してください")
            setattr(cfg, key, float(val))
    return cfg


def _build_traversal(data: dict[str, object]) -> TraversalConfig:
    cfg = TraversalConfig()
    if "max_nodes" in data:
        val = data["max_nodes"]
        if not isinstance(val, int) or isinstance(val, bool) or val < 1:
            _fail("traversal.max_nodes は 1 以上の整数で指定してください")
        cfg.max_nodes = val
    if "policy" in data:
        val = data["policy"]
        choices = [p.value for p in TraversalPolicy]
        if val not in choices:
            _fail(f"traversal.policy は {' / '.join(choices)} のいずれかで指定してください")
        cfg.policy = TraversalPolicy(val)
    return cfg


# ---------------------------------------------------------------------------
# ロード
# ---------------------------------------------------------------------------


def load_config(path: Path | None) -> AppConfig:
    """設定ファイルを読み込んで AppConfig を返す。

    Args:
        path: 設定ファイルのパス。None の場合はカレントディレクトリの
              config.toml を探索し、存在しなければデフォルト値を使用する。

    Returns:
        AppConfig オブジェクト。
    """
    config_path = path if path is not None else Path("config.toml")

    if not config_path.exists():
        return AppConfig()

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    app_config = AppConfig()

    style: dict[str, object] = data.get("style", {})  # type: ignore[assignment]
    if isinstance(style, dict):
        colors = style.get("colors")
        if isinstance(colors, dict):
            app_config.colors = _build_colors(colors)  # type: ignore[arg-type]
        dimensions = style.get("dimensions")
        if isinstance(dimensions, dict):
            app_config.dimensions = _build_dimensions(dimensions)  # type: ignore[arg-type]

    layout = data.get("layout")
    if isinstance(layout, dict):
        app_config.layout = _build_layout(layout)

    traversal = data.get("traversal")
    if isinstance(traversal, dict):
        app_config.traversal = _build_traversal(traversal)

    return app_config
