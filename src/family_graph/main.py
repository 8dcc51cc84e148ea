import json
import logging
from dataclasses import dataclass
from pathlib import Path

import click
from sqlalchemy.exc import SQLAlchemyError

from family_graph.config import AppConfig, load_config
from family_graph.csv_parser import CsvParseError, parse_csv
from family_graph.frame_drawer import draw_layout
from family_graph.maintenance import check_integrity, migrate_legacy_relationships, repair_integrity
from family_graph.models import RelationshipType, UnionType
from family_graph.renderer import render_layout
from family_graph.service import read_tree, repair_unions, tree_layout
from family_graph.store import StoreError, TreeStore
from family_graph.unions import add_child_to_union, create_union, set_parent_relationship

_CONFIG_OPTION = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True),
    default=None,
    help="設定ファイルのパス（省略時はカレントディレクトリの config.toml を自動検索）",
)


def _view_options(func):
    """表示範囲を指定するオプションをまとめて付ける。"""
    func = click.option(
        "--hide-descendants", multiple=True, help="子孫を隠す人物ID（複数指定可）"
    )(func)
    func = click.option("--hide-ancestors", multiple=True, help="祖先を隠す人物ID（複数指定可）")(
        func
    )
    func = click.option(
        "--expand",
        "expanded",
        multiple=True,
        help="展開する人物ID（指定すると展開した人物の周辺のみ探索する）",
    )(func)
    func = click.option("--focus", default=None, help="注目人物ID（省略時は最初の人物）")(func)
    return func


@dataclass
class _Context:
    store_location: str
    owner_id: str
    _store: TreeStore | None = None

    def load(self) -> TreeStore:
        """ストアを開く。同じコマンド内では開いたストアを使い回す。"""
        if self._store is None:
            try:
                if "://" in self.store_location:
                    self._store = TreeStore(self.store_location)
                else:
                    self._store = TreeStore.open(self.store_location)
            except (OSError, SQLAlchemyError) as e:
                raise click.ClickException(f"ストアを開けません: {self.store_location}: {e}")
        return self._store

    def close(self) -> None:
        if self._store is not None:
            self._store.close()
            self._store = None


pass_context = click.make_pass_decorator(_Context)


def _load_app_config(config_path: str | None) -> AppConfig:
    return load_config(Path(config_path) if config_path else None)


def _layout(ctx: _Context, config: AppConfig, focus, expanded, hide_ancestors, hide_descendants):
    store = ctx.load()
    try:
        focus_id, layout = tree_layout(
            store,
            ctx.owner_id,
            focus_id=focus,
            expanded_ids=expanded or None,
            hide_ancestors=hide_ancestors,
            hide_descendants=hide_descendants,
            config=config,
        )
    except StoreError as e:
        raise click.ClickException(str(e))
    if focus_id is None:
        raise click.ClickException(f"人物が登録されていません（所有者: {ctx.owner_id}）")
    return layout


@click.group()
@click.option(
    "--store",
    "store_path",
    type=click.Path(dir_okay=False),
    default="family_graph.db",
    show_default=True,
    envvar="FAMILY_GRAPH_STORE",
    help="データを保存する SQLite ファイル（'://' を含む場合は SQLAlchemy の接続 URL）",
)
@click.option("--owner", "owner_id", default="default", show_default=True, help="所有者ID")
@click.option("-v", "--verbose", is_flag=True, help="詳細なログを出力する")
@click.pass_context
def cli(click_ctx: click.Context, store_path: str, owner_id: str, verbose: bool) -> None:
    """家系図グラフ管理CLIアプリケーション"""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )
    click_ctx.obj = _Context(store_location=store_path, owner_id=owner_id)
    click_ctx.call_on_close(click_ctx.obj.close)


@cli.command(name="import")
@click.option("--input", "input_path", required=True, help="入力CSVファイルパス")
@click.option(
    "--migrate/--no-migrate",
    default=True,
    show_default=True,
    help="読み込み後に旧形式の関係を Union へ移行する",
)
@click.option("--replace", is_flag=True, help="所有者の既存データを削除してから読み込む")
@pass_context
def import_csv(ctx: _Context, input_path: str, migrate: bool, replace: bool) -> None:
    """旧形式のCSVを読み込んでストアに登録する"""
    try:
        persons = parse_csv(input_path, ctx.owner_id)
    except CsvParseError as e:
        raise click.ClickException(str(e))

    store = ctx.load()
    if replace:
        store.reset(ctx.owner_id)
    try:
        for person in persons:
            store.add_person(person)
    except StoreError as e:
        raise click.ClickException(str(e))

    if migrate:
        result = migrate_legacy_relationships(store, ctx.owner_id)
        click.echo(f"Union を {result.unions_linked} 件作成・確認しました")

    click.echo(f"{len(persons)} 人を読み込みました: {ctx.store_location}")


@cli.command()
@_view_options
@click.option("--output", "output_path", default=None, help="出力JSONファイルパス（省略時は標準出力）")
@_CONFIG_OPTION
@pass_context
def tree(
    ctx: _Context,
    focus: str | None,
    expanded: tuple[str, ...],
    hide_ancestors: tuple[str, ...],
    hide_descendants: tuple[str, ...],
    output_path: str | None,
    config_path: str | None,
) -> None:
    """表示用のノードとエッジを JSON で出力する"""
    config = _load_app_config(config_path)
    store = ctx.load()
    try:
        data = read_tree(
            store,
            ctx.owner_id,
            focus_id=focus,
            expanded_ids=expanded or None,
            hide_ancestors=hide_ancestors,
            hide_descendants=hide_descendants,
            config=config,
        )
    except StoreError as e:
        raise click.ClickException(str(e))

    text = json.dumps(data, ensure_ascii=False, indent=2)
    if output_path is None:
        click.echo(text)
        return
    Path(output_path).write_text(text + "\n", encoding="utf-8")
    click.echo(f"出力しました: {output_path}")


@cli.command()
@_view_options
@click.option("--output", "output_path", required=True, help="出力ファイルパス")
@click.option(
    "--format",
    "fmt",
    type=click.Choice(["png", "svg", "dot"]),
    default="png",
    help="出力形式",
)
@_CONFIG_OPTION
@pass_context
def render(
    ctx: _Context,
    focus: str | None,
    expanded: tuple[str, ...],
    hide_ancestors: tuple[str, ...],
    hide_descendants: tuple[str, ...],
    output_path: str,
    fmt: str,
    config_path: str | None,
) -> None:
    """家系図を Graphviz で画像として出力する"""
    config = _load_app_config(config_path)
    layout = _layout(ctx, config, focus, expanded, hide_ancestors, hide_descendants)
    result = render_layout(layout, output_path, fmt=fmt, config=config)
    click.echo(f"出力しました: {result}")


@cli.command()
@_view_options
@click.option("--output", "output_path", required=True, help="出力PNGファイルパス")
@_CONFIG_OPTION
@pass_context
def draw(
    ctx: _Context,
    focus: str | None,
    expanded: tuple[str, ...],
    hide_ancestors: tuple[str, ...],
    hide_descendants: tuple[str, ...],
    output_path: str,
    config_path: str | None,
) -> None:
    """家系図を Pillow で PNG 画像として出力する"""
    config = _load_app_config(config_path)
    layout = _layout(ctx, config, focus, expanded, hide_ancestors, hide_descendants)
    result = draw_layout(layout, output_path, config)
    click.echo(f"出力しました: {result}")


@cli.command()
@click.argument("partner_a")
@click.argument("partner_b", required=False)
@click.option(
    "--type",
    "union_type",
    type=click.Choice([t.value for t in UnionType]),
    default=UnionType.RELATIONSHIP.value,
    help="Union の種類",
)
@pass_context
def union(ctx: _Context, partner_a: str, partner_b: str | None, union_type: str) -> None:
    """2人（または1人）の Union を作成する。既にあればその ID を表示する"""
    store = ctx.load()
    try:
        created = create_union(store, partner_a, partner_b, ctx.owner_id, UnionType(union_type))
    except StoreError as e:
        raise click.ClickException(str(e))
    click.echo(created.id)


@cli.command(name="add-child")
@click.argument("union_id")
@click.argument("child_id")
@click.option(
    "--relationship",
    type=click.Choice([t.value for t in RelationshipType]),
    default=RelationshipType.BIOLOGICAL.value,
    help="パートナー全員との親子関係の種類",
)
@pass_context
def add_child(ctx: _Context, union_id: str, child_id: str, relationship: str) -> None:
    """Union に子を追加する"""
    store = ctx.load()
    try:
        updated = add_child_to_union(store, union_id, child_id, ctx.owner_id)
        rel = RelationshipType(relationship)
        if rel is not RelationshipType.BIOLOGICAL:
            for parent_id in updated.partner_ids:
                set_parent_relationship(store, child_id, parent_id, rel, ctx.owner_id)
    except (StoreError, ValueError) as e:
        raise click.ClickException(str(e))
    click.echo(f"追加しました: {child_id} -> {union_id}")


@cli.command()
@pass_context
def repair(ctx: _Context) -> None:
    """同じパートナー組の重複 Union を統合する"""
    store = ctx.load()
    result = repair_unions(store, ctx.owner_id)
    click.echo(json.dumps(result))


@cli.command()
@click.option("--fix", is_flag=True, help="見つかった不整合を修復する")
@pass_context
def check(ctx: _Context, fix: bool) -> None:
    """Union と人物の参照の整合性を確認する"""
    store = ctx.load()
    if fix:
        result = repair_integrity(store, ctx.owner_id)
        issues = result.issues
    else:
        issues = check_integrity(store, ctx.owner_id)

    for issue in issues:
        click.echo(str(issue))
    if not issues:
        click.echo("不整合はありません")
    elif fix:
        click.echo(f"{len(issues)} 件を修復しました")
    else:
        raise click.ClickException(f"{len(issues)} 件の不整合があります")


@cli.command()
@pass_context
def migrate(ctx: _Context) -> None:
    """旧形式の親・配偶者情報を構造化された関係に移行する"""
    store = ctx.load()
    result = migrate_legacy_relationships(store, ctx.owner_id)
    click.echo(
        json.dumps(
            {
                "parent_refs_added": result.parent_refs_added,
                "unions_linked": result.unions_linked,
                **result.repair.to_dict(),
            }
        )
    )


@cli.command()
@pass_context
def matches(ctx: _Context) -> None:
    """他の所有者のツリーから同一人物の候補を表示する"""
    store = ctx.load()
    for person, candidates in store.find_potential_matches(ctx.owner_id):
        others = ", ".join(f"{c.id} ({c.owner_id})" for c in candidates)
        click.echo(f"{person.id} {person.display_name}: {others}")
