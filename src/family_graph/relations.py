"""構造化された関係情報と旧スキーマの単純なIDリストを統合して扱う。

親・子・パートナーを取り出す処理はすべてここを通し、
「フィールドAが無ければフィールドB」という分岐を各所に散らさない。
"""

from __future__ import annotations

from typing import Iterable

from family_graph.models import Person, RelationshipType, Union


def resolve_parents(person: Person) -> list[str]:
    """親IDを返す。parent_refs を優先し、旧 parents の分を後ろに加える。

    自分自身を指す参照は無視する。
    """
    ids: list[str] = []
    for ref in person.parent_refs:
        if ref.parent_id != person.id and ref.parent_id not in ids:
            ids.append(ref.parent_id)
    for pid in person.parents:
        if pid != person.id and pid not in ids:
            ids.append(pid)
    return ids


def resolve_children(
    person: Person,
    unions: Iterable[Union] = (),
    referencing: Iterable[Person] = (),
) -> list[str]:
    """子IDを返す。

    Args:
        person: 対象の人物
        unions: この人物がパートナーである Union（children_ids を使う）
        referencing: 親としてこの人物を参照している人物

    Returns:
        Union の子、旧 children、参照元の順に重複を除いて並べたIDリスト
    """
    ids: list[str] = []
    for union in unions:
        if person.id not in union.partner_ids:
            continue
        for cid in union.children_ids:
            if cid not in ids:
                ids.append(cid)
    for cid in person.children:
        if cid != person.id and cid not in ids:
            ids.append(cid)
    for child in referencing:
        if child.id != person.id and child.id not in ids and person.id in resolve_parents(child):
            ids.append(child.id)
    return ids


def resolve_partners(person: Person, unions: Iterable[Union] = ()) -> list[str]:
    """パートナーIDを返す。Union のパートナーを優先し、旧 spouse を後ろに加える。"""
    ids: list[str] = []
    for union in unions:
        other = union.other_partner(person.id)
        if person.id in union.partner_ids and other is not None and other not in ids:
            ids.append(other)
    for sid in person.spouse:
        if sid != person.id and sid not in ids:
            ids.append(sid)
    return ids


def relationship_to(child: Person, parent_id: str) -> RelationshipType | None:
    """子から見た parent_id との関係を返す。

    parent_refs に無く旧 parents にのみある場合は実親とみなす。
    """
    ref = child.get_parent_ref(parent_id)
    if ref is not None:
        return ref.type
    if parent_id in child.parents:
        return RelationshipType.BIOLOGICAL
    return None


def classify_child_relationship(child: Person, partner_ids: Iterable[str]) -> RelationshipType:
    """Union の子に付ける関係タグを決める。

    各パートナーとの関係（relationship_to）を見て、全て実親なら biological、
    それ以外は step > adoptive > foster の順で最初に該当したものを返す。
    どのパートナーとも関係が無ければ biological とする。
    """
    matched = [
        rel for rel in (relationship_to(child, pid) for pid in set(partner_ids)) if rel is not None
    ]
    if not matched or all(t is RelationshipType.BIOLOGICAL for t in matched):
        return RelationshipType.BIOLOGICAL
    for candidate in (
        RelationshipType.STEP,
        RelationshipType.ADOPTIVE,
        RelationshipType.FOSTER,
    ):
        if candidate in matched:
            return candidate
    return RelationshipType.BIOLOGICAL
