from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from family_graph.models import ParentRef, Person, Union
from family_graph.store import DuplicateConflictError, NotFoundError, StoreError, TreeStore

OWNER = "owner-1"


def _person(id: str, owner_id: str = OWNER, **kwargs) -> Person:
    kwargs.setdefault("first_name", id)
    return Person(id=id, owner_id=owner_id, **kwargs)


class TestPersons:
    def test_add_and_get(self) -> None:
        store = TreeStore()
        store.add_person(_person("a"))
        person = store.get_person("a", OWNER)
        assert person is not None
        assert person.first_name == "a"

    def test_generated_id(self) -> None:
        store = TreeStore()
        person = store.add_person(Person(id="", owner_id=OWNER, first_name="x"))
        assert person.id
        assert store.get_person(person.id, OWNER) is not None

    def test_duplicate_id_rejected(self) -> None:
        store = TreeStore()
        store.add_person(_person("a"))
        with pytest.raises(StoreError):
            store.add_person(_person("a"))

    def test_owner_scoping(self) -> None:
        """他の所有者の人物は存在しないものとして扱う。"""
        store = TreeStore()
        store.add_person(_person("a", owner_id="other"))
        assert store.get_person("a", OWNER) is None
        assert store.find_persons(OWNER) == []
        with pytest.raises(NotFoundError):
            store.require_person("a", OWNER)

    def test_reads_are_copies(self) -> None:
        store = TreeStore()
        store.add_person(_person("a"))
        person = store.require_person("a", OWNER)
        person.first_name = "changed"
        assert store.require_person("a", OWNER).first_name == "a"

    def test_find_persons_by_parent(self) -> None:
        """parent_refs と旧 parents のどちらで参照していても子として返す。"""
        store = TreeStore()
        store.add_person(_person("p"))
        store.add_person(_person("c1", parent_refs=[ParentRef("p")]))
        store.add_person(_person("c2", parents=["p"]))
        store.add_person(_person("x"))
        ids = [p.id for p in store.find_persons(OWNER, parent_id="p")]
        assert ids == ["c1", "c2"]

    def test_update_person(self) -> None:
        store = TreeStore()
        store.add_person(_person("a"))
        updated = store.update_person("a", OWNER, birth_date=date(1950, 1, 1))
        assert updated.birth_date == date(1950, 1, 1)
        with pytest.raises(StoreError):
            store.update_person("a", OWNER, owner_id="other")

    def test_delete_person_removes_references(self) -> None:
        store = TreeStore()
        store.add_person(_person("a", union_ids=["u1"], children=["c"]))
        store.add_person(_person("b", union_ids=["u1"], spouse=["a"]))
        store.add_person(_person("c", parent_refs=[ParentRef("a")], parents=["a"]))
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"], children_ids=["c"]))
        store.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["b"], children_ids=["a"]))

        store.delete_person("a", OWNER)

        assert store.get_person("a", OWNER) is None
        assert store.get_union("u1", OWNER) is None
        assert store.require_union("u2", OWNER).children_ids == []
        assert store.require_person("b", OWNER).union_ids == []
        assert store.require_person("b", OWNER).spouse == []
        child = store.require_person("c", OWNER)
        assert child.parent_refs == []
        assert child.parents == []


class TestUnions:
    def test_unique_insert(self) -> None:
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        with pytest.raises(DuplicateConflictError) as exc_info:
            store.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["b", "a"]))
        assert exc_info.value.partner_ids == ["a", "b"]
        assert [u.id for u in store.find_unions(OWNER)] == ["u1"]

    def test_duplicate_union_id_rejected(self) -> None:
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        with pytest.raises(StoreError) as exc_info:
            store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["c"]))
        assert not isinstance(exc_info.value, DuplicateConflictError)

    def test_same_pair_for_other_owner_allowed(self) -> None:
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        store.insert_union(Union(id="u2", owner_id="other", partner_ids=["a", "b"]))
        assert len(store.find_unions(OWNER)) == 1
        assert len(store.find_unions("other")) == 1

    def test_non_unique_insert(self) -> None:
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        store.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["a", "b"]), unique=False)
        assert [u.id for u in store.find_unions(OWNER, partner_ids=["b", "a"])] == ["u1", "u2"]

    def test_merge_restores_uniqueness(self) -> None:
        """統合で残した Union は、再び一意制約の対象になる。"""
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]), unique=False)
        store.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["a", "b"]), unique=False)
        master = store.require_union("u1", OWNER)
        master.children_ids = ["c"]
        store.merge_unions(master, ["u2"])

        assert [u.id for u in store.find_unions(OWNER)] == ["u1"]
        assert store.require_union("u1", OWNER).children_ids == ["c"]
        with pytest.raises(DuplicateConflictError):
            store.insert_union(Union(id="u3", owner_id=OWNER, partner_ids=["b", "a"]))

    def test_find_by_partner(self) -> None:
        store = TreeStore()
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        store.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["b", "c"]))
        assert [u.id for u in store.find_unions(OWNER, partner_id="b")] == ["u1", "u2"]
        assert [u.id for u in store.find_unions(OWNER, partner_id="a")] == ["u1"]


class TestCommit:
    def test_commit_all_or_nothing(self) -> None:
        """存在しないレコードが含まれていれば何も書き込まない。"""
        store = TreeStore()
        store.add_person(_person("a"))
        person = store.require_person("a", OWNER)
        person.first_name = "changed"
        missing = Union(id="missing", owner_id=OWNER, partner_ids=["a"])
        with pytest.raises(NotFoundError):
            store.commit(persons=[person], unions=[missing])
        assert store.require_person("a", OWNER).first_name == "a"


class TestMatches:
    def test_potential_matches(self) -> None:
        store = TreeStore()
        store.add_person(_person("a", first_name="太郎", last_name="山田", birth_date=date(1950, 1, 1)))
        store.add_person(
            _person("b", owner_id="other", first_name="太郎", last_name="山田", birth_date=date(1951, 5, 5))
        )
        store.add_person(
            _person("c", owner_id="other", first_name="太郎", last_name="山田", birth_date=date(1960, 1, 1))
        )
        store.add_person(_person("d", owner_id="other", first_name="次郎", last_name="山田"))

        matches = store.find_potential_matches(OWNER)
        assert len(matches) == 1
        person, candidates = matches[0]
        assert person.id == "a"
        assert [c.id for c in candidates] == ["b"]


class TestPersistence:
    def test_reopen_keeps_data(self, tmp_path: Path) -> None:
        path = tmp_path / "data" / "tree.db"
        with TreeStore.open(path) as store:
            store.add_person(_person("a", birth_date=date(1950, 1, 1), parent_refs=[ParentRef("p")]))
            store.add_person(_person("b"))
            store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
        assert path.exists()

        with TreeStore.open(path) as reopened:
            person = reopened.require_person("a", OWNER)
            assert person.birth_date == date(1950, 1, 1)
            assert person.parent_refs == [ParentRef("p")]
            assert reopened.require_union("u1", OWNER).partner_ids == ["a", "b"]

    def test_unique_across_connections(self, tmp_path: Path) -> None:
        """同じファイルを開いた別のストアからも、同じ組の Union は登録できない。"""
        path = tmp_path / "tree.db"
        with TreeStore.open(path) as first, TreeStore.open(path) as second:
            first.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a", "b"]))
            with pytest.raises(DuplicateConflictError):
                second.insert_union(Union(id="u2", owner_id=OWNER, partner_ids=["a", "b"]))
            assert [u.id for u in second.find_unions(OWNER)] == ["u1"]

    def test_writes_visible_to_other_connection(self, tmp_path: Path) -> None:
        path = tmp_path / "tree.db"
        with TreeStore.open(path) as first, TreeStore.open(path) as second:
            first.add_person(_person("a"))
            second.update_person("a", OWNER, last_name="山田")
            assert first.require_person("a", OWNER).last_name == "山田"

    def test_reset(self) -> None:
        store = TreeStore()
        store.add_person(_person("a"))
        store.add_person(_person("b", owner_id="other"))
        store.insert_union(Union(id="u1", owner_id=OWNER, partner_ids=["a"]))
        store.reset(OWNER)
        assert store.owners() == ["other"]
        assert store.find_unions(OWNER) == []
