"""保存済みデータの修復処理。

必要なときに呼び出す前提で、何度実行しても結果は変わらない。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

from family_graph.models import ParentRef, RelationshipType, Union
from family_graph.store import TreeStore
from family_graph.unions import add_child_to_union, create_union

log = logging.getLogger(__name__)


@dataclass
class RepairResult:
    merged_count: int = 0  # 統合したパートナー組の数
    deleted_count: int = 0  # 削除した重複 Union の数

    def to_dict(self) -> dict[str, int]:
        return {"merged_count": self.merged_count, "deleted_count": self.deleted_count}


def repair_duplicate_unions(store: TreeStore, owner_id: str) -> RepairResult:
    """同じパートナー組の Union を1つに統合する。

    最初に登録された Union を残し、重複分の子を統合してから削除する。
    重複 Union を参照していた人物の union_ids は残す側に付け替える。
    組ごとに1つのトランザクションで書き込み、残した Union は一意制約の対象にする。

    Returns:
        RepairResult（統合した組の数、削除した Union の数）
    """
    result = RepairResult()

    with store.owner_lock(owner_id):
        groups: dict[tuple[str, ...], list[Union]] = {}
        for union in store.find_unions(owner_id):
            groups.setdefault(union.key, []).append(union)

        persons = store.find_persons(owner_id)

        for key, duplicates in groups.items():
            if len(duplicates) <= 1:
                continue

            master, *others = duplicates
            duplicate_ids = {dup.id for dup in others}
            for dup in others:
                for child_id in dup.children_ids:
                    if child_id not in master.children_ids:
                        master.children_ids.append(child_id)

            changed = []
            for person in persons:
                if not duplicate_ids.intersection(person.union_ids):
                    continue
                union_ids = [u for u in person.union_ids if u not in duplicate_ids]
                if master.id not in union_ids:
                    union_ids.append(master.id)
                person.union_ids = union_ids
                changed.append(person)

            store.merge_unions(master, duplicate_ids, persons=changed)

            result.merged_count += 1
            result.deleted_count += len(others)
            log.info(
                "merged %d duplicate union(s) of %s into %s",
                len(others),
                list(key),
                master.id,
            )

    return result


class IssueKind(Enum):
    MISSING_PARENT_REF = "missing_parent_ref"  # Union の子に、パートナーへの参照が無い
    MISSING_UNION_REF = "missing_union_ref"  # パートナーの union_ids に Union が無い
    DANGLING_UNION_REF = "dangling_union_ref"  # union_ids が存在しない/無関係の Union を指す


@dataclass
class IntegrityIssue:
    kind: IssueKind
    person_id: str
    union_id: str
    parent_id: str | None = None

    def __str__(self) -> str:
        text = f"{self.kind.value}: person={self.person_id} union={self.union_id}"
        if self.parent_id is not None:
            text += f" parent={self.parent_id}"
        return text


@dataclass
class IntegrityResult:
    issues: list[IntegrityIssue] = field(default_factory=list)
    fixed_persons: int = 0


def check_integrity(store: TreeStore, owner_id: str) -> list[IntegrityIssue]:
    """Union と人物側の参照の食い違いを検出する。

    add_child_to_union などが途中で失敗した場合に残る不整合を見つける。
    """
    unions = {u.id: u for u in store.find_unions(owner_id)}
    persons = {p.id: p for p in store.find_persons(owner_id)}
    issues: list[IntegrityIssue] = []

    for union in unions.values():
        for child_id in union.children_ids:
            child = persons.get(child_id)
            if child is None:
                continue
            for partner_id in union.partner_ids:
                if child.get_parent_ref(partner_id) is None:
                    issues.append(
                        IntegrityIssue(IssueKind.MISSING_PARENT_REF, child_id, union.id, partner_id)
                    )
        for partner_id in union.partner_ids:
            partner = persons.get(partner_id)
            if partner is not None and union.id not in partner.union_ids:
                issues.append(IntegrityIssue(IssueKind.MISSING_UNION_REF, partner_id, union.id))

    for person in persons.values():
        for union_id in person.union_ids:
            union = unions.get(union_id)
            if union is None or person.id not in union.partner_ids:
                issues.append(IntegrityIssue(IssueKind.DANGLING_UNION_REF, person.id, union_id))

    return issues


def repair_integrity(store: TreeStore, owner_id: str) -> IntegrityResult:
    """check_integrity で見つかった不整合を人物側を直して解消する。

    欠けている親への参照は実親として追加する。
    """
    with store.owner_lock(owner_id):
        issues = check_integrity(store, owner_id)
        persons = {}
        for issue in issues:
            person = persons.get(issue.person_id) or store.require_person(issue.person_id, owner_id)
            persons[person.id] = person
            if issue.kind is IssueKind.MISSING_PARENT_REF and issue.parent_id is not None:
                if person.get_parent_ref(issue.parent_id) is None:
                    person.parent_refs.append(
                        ParentRef(parent_id=issue.parent_id, type=RelationshipType.BIOLOGICAL)
                    )
            elif issue.kind is IssueKind.MISSING_UNION_REF:
                if issue.union_id not in person.union_ids:
                    person.union_ids.append(issue.union_id)
            elif issue.kind is IssueKind.DANGLING_UNION_REF:
                person.union_ids = [u for u in person.union_ids if u != issue.union_id]
        store.commit(persons=persons.values())

    for issue in issues:
        log.info("repaired %s", issue)
    return IntegrityResult(issues=issues, fixed_persons=len(persons))


@dataclass
class MigrationResult:
    parent_refs_added: int = 0  # parent_refs を補った人物の数
    unions_linked: int = 0  # 旧 spouse から作成・確認した Union の数
    repair: RepairResult = field(default_factory=RepairResult)


def migrate_legacy_relationships(store: TreeStore, owner_id: str) -> MigrationResult:
    """旧スキーマの関係情報を構造化された形に移す。

    1. 旧 parents を parent_refs（実親）として補う
    2. 旧 spouse の組ごとに Union を作成し、2人に共通する旧 children を
       add_child_to_union で登録する（子の parent_refs も同時に補う）
    3. 重複 Union を統合する
    """
    result = MigrationResult()

    with store.owner_lock(owner_id):
        persons = store.find_persons(owner_id)
        changed = []
        for person in persons:
            added = False
            for parent_id in person.parents:
                if person.get_parent_ref(parent_id) is None:
                    person.parent_refs.append(ParentRef(parent_id=parent_id))
                    added = True
            if added:
                changed.append(person)
        store.commit(persons=changed)
        result.parent_refs_added = len(changed)

        processed: set[tuple[str, ...]] = set()
        for person in persons:
            for spouse_id in person.spouse:
                key = tuple(sorted((person.id, spouse_id)))
                if key in processed or spouse_id == person.id:
                    continue
                processed.add(key)

                spouse = store.get_person(spouse_id, owner_id)
                if spouse is None:
                    log.warning("spouse %s of %s not found, skipped", spouse_id, person.id)
                    continue

                union = create_union(store, person.id, spouse_id, owner_id)
                for child_id in person.children:
                    if (
                        child_id in spouse.children
                        and child_id not in union.children_ids
                        and child_id not in union.partner_ids
                        and store.get_person(child_id, owner_id) is not None
                    ):
                        add_child_to_union(store, union.id, child_id, owner_id)
                result.unions_linked += 1

        result.repair = repair_duplicate_unions(store, owner_id)

    log.info(
        "migrated owner %s: %d parent ref update(s), %d union(s)",
        owner_id,
        result.parent_refs_added,
        result.unions_linked,
    )
    return result
