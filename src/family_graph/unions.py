"""Union（パートナー関係）の作成と、子の登録を管理する。

Union と人物側の参照（``union_ids`` / ``parent_refs``）は常に同じ
トランザクションで更新する。同じパートナー組の Union は、プロセス内では
所有者ごとのロックで、プロセス間ではストアの一意制約で二重登録を防ぐ。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Literal

from family_graph.models import ParentRef, Person, RelationshipType, Union, UnionType, union_key
from family_graph.relations import resolve_parents
from family_graph.store import DuplicateConflictError, TreeStore, new_id

log = logging.getLogger(__name__)

RelationKind = Literal["parent", "child", "spouse"]


@dataclass
class PotentialChild:
    """Union に追加できる子の候補。"""

    person: Person
    is_child_of_partner1: bool
    is_child_of_partner2: bool

    @property
    def is_biological(self) -> bool:
        return self.is_child_of_partner1 and self.is_child_of_partner2


def create_union(
    store: TreeStore,
    partner_a: str,
    partner_b: str | None,
    owner_id: str,
    union_type: UnionType = UnionType.RELATIONSHIP,
) -> Union:
    """2人の間の Union を作成する。既に存在すればそれを返す。

    partner_b が None（または partner_a と同じ）の場合は、
    片親だけの Union を作成する。

    Args:
        store: ストア
        partner_a: パートナーの人物ID
        partner_b: もう一方のパートナーの人物ID
        owner_id: 所有者ID
        union_type: 新規作成時の種類

    Returns:
        作成された、または既存の Union

    Raises:
        NotFoundError: パートナーが所有者の範囲に存在しない
    """
    ids = union_key([partner_a] if partner_b is None else [partner_a, partner_b])

    with store.owner_lock(owner_id):
        partners = [store.require_person(pid, owner_id) for pid in ids]

        existing = store.find_unions(owner_id, partner_ids=ids)
        if existing:
            return existing[0]

        union = Union(
            id=new_id(),
            owner_id=owner_id,
            partner_ids=list(ids),
            children_ids=[],
            type=union_type,
        )
        for partner in partners:
            partner.union_ids.append(union.id)
        try:
            union = store.insert_union(union, persons=partners)
        except DuplicateConflictError:
            # 別プロセスが先に登録した。登録済みの方を読み直して返す
            existing = store.find_unions(owner_id, partner_ids=ids)
            log.info("union for %s created concurrently, returning %s", list(ids), existing[0].id)
            return existing[0]

    log.info("created union %s for %s (owner=%s)", union.id, list(ids), owner_id)
    return union


def add_child_to_union(
    store: TreeStore,
    union_id: str,
    child_id: str,
    owner_id: str,
) -> Union:
    """Union に子を追加する。

    子の parent_refs に無いパートナーは実親（biological）として追加する。
    養子・連れ子などは追加後に set_parent_relationship で変更する。
    Union と子は1回の commit で同時に保存する。

    Raises:
        NotFoundError: Union または子が存在しない
        ValueError: 子が Union のパートナー自身である
    """
    with store.owner_lock(owner_id):
        union = store.require_union(union_id, owner_id)
        child = store.require_person(child_id, owner_id)
        if child_id in union.partner_ids:
            raise ValueError(f"{child_id} is a partner of union {union_id}")

        union_changed = False
        if child_id not in union.children_ids:
            union.children_ids.append(child_id)
            union_changed = True

        child_changed = False
        for parent_id in union.partner_ids:
            if child.get_parent_ref(parent_id) is None:
                child.parent_refs.append(
                    ParentRef(parent_id=parent_id, type=RelationshipType.BIOLOGICAL)
                )
                child_changed = True

        store.commit(
            persons=[child] if child_changed else [],
            unions=[union] if union_changed else [],
        )

    if union_changed or child_changed:
        log.info("added child %s to union %s", child_id, union_id)
    return union


def remove_child_from_union(
    store: TreeStore,
    union_id: str,
    child_id: str,
    owner_id: str,
) -> Union:
    """Union から子を外す。子の parent_refs はそのまま残す。"""
    with store.owner_lock(owner_id):
        union = store.require_union(union_id, owner_id)
        if child_id in union.children_ids:
            union.children_ids = [c for c in union.children_ids if c != child_id]
            union = store.save_union(union)
            log.info("removed child %s from union %s", child_id, union_id)
    return union


def set_parent_relationship(
    store: TreeStore,
    child_id: str,
    parent_id: str,
    relationship: RelationshipType | str,
    owner_id: str,
    certainty: float | None = None,
) -> Person:
    """子から親への関係の種類を設定する。参照が無ければ追加する。"""
    relationship = RelationshipType.parse(relationship)
    with store.owner_lock(owner_id):
        child = store.require_person(child_id, owner_id)
        store.require_person(parent_id, owner_id)

        ref = child.get_parent_ref(parent_id)
        if ref is None:
            ref = ParentRef(parent_id=parent_id, type=relationship)
            child.parent_refs.append(ref)
        else:
            ref.type = relationship
        if certainty is not None:
            ref.certainty = certainty
        return store.save_person(child)


def find_unions_for_person(store: TreeStore, person_id: str, owner_id: str) -> list[Union]:
    return store.find_unions(owner_id, partner_id=person_id)


def potential_children(store: TreeStore, union_id: str, owner_id: str) -> list[PotentialChild]:
    """どちらかのパートナーの子で、まだ Union に登録されていない人物を返す。"""
    union = store.require_union(union_id, owner_id)
    partner1 = union.partner_ids[0] if union.partner_ids else None
    partner2 = union.partner_ids[1] if len(union.partner_ids) > 1 else None

    seen: set[str] = set()
    result: list[PotentialChild] = []
    for partner_id in union.partner_ids:
        for child in store.find_persons(owner_id, parent_id=partner_id):
            if child.id in seen or child.id in union.children_ids:
                continue
            seen.add(child.id)
            parents = resolve_parents(child)
            result.append(
                PotentialChild(
                    person=child,
                    is_child_of_partner1=partner1 in parents,
                    is_child_of_partner2=partner2 is not None and partner2 in parents,
                )
            )
    return result


def add_relationship(
    store: TreeStore,
    person_id: str,
    related_id: str,
    kind: RelationKind,
    owner_id: str,
) -> None:
    """2人の間に親・子・配偶者の関係を追加する。

    parent / child は子の parent_refs（実親）に加え、旧スキーマの
    parents / children も更新する。spouse は Union を作成し、旧 spouse も更新する。
    """
    if kind not in ("parent", "child", "spouse"):
        raise ValueError(f"Unknown relationship kind: {kind}")
    if person_id == related_id:
        raise ValueError("A person cannot be related to themselves")

    with store.owner_lock(owner_id):
        person = store.require_person(person_id, owner_id)
        related = store.require_person(related_id, owner_id)

        if kind == "spouse":
            create_union(store, person_id, related_id, owner_id)
            # create_union が union_ids を更新しているので読み直す
            person = store.require_person(person_id, owner_id)
            related = store.require_person(related_id, owner_id)
            if related_id not in person.spouse:
                person.spouse.append(related_id)
            if person_id not in related.spouse:
                related.spouse.append(person_id)
        else:
            child, parent = (person, related) if kind == "parent" else (related, person)
            if child.get_parent_ref(parent.id) is None:
                child.parent_refs.append(ParentRef(parent_id=parent.id))
            if parent.id not in child.parents:
                child.parents.append(parent.id)
            if child.id not in parent.children:
                parent.children.append(child.id)

        store.commit(persons=[person, related])
    log.info("linked %s -[%s]-> %s", person_id, kind, related_id)
