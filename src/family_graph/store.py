"""人物・Union レコードの保存領域。

所有者（owner_id）単位でスコープされたストアで、SQLAlchemy を通して
SQLite などのデータベースに保存する。読み出しは毎回行から新しい
データクラスを作るため、呼び出し側が変更しても保存内容には影響しない。
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterable

from sqlalchemy import and_, delete, func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, aliased, sessionmaker

from family_graph.db import (
    MEMORY_URL,
    PersonRecord,
    UnionRecord,
    create_store_engine,
    pair_key,
    sqlite_url,
)
from family_graph.models import Person, Union, union_key

log = logging.getLogger(__name__)


class StoreError(Exception):
    """ストア操作のエラー。"""


class NotFoundError(StoreError):
    """指定された人物・Union が所有者の範囲に存在しない。"""


class DuplicateConflictError(StoreError):
    """同じ所有者・同じパートナー組の Union が既に存在する。"""

    def __init__(self, owner_id: str, partner_ids: Iterable[str]) -> None:
        self.owner_id = owner_id
        self.partner_ids = list(union_key(partner_ids))
        super().__init__(f"Union already exists for partners {self.partner_ids}")


def new_id() -> str:
    return uuid.uuid4().hex


class TreeStore:
    """所有者単位の人物・Union ストア。

    Args:
        url: SQLAlchemy の接続 URL。省略時はインメモリの SQLite
    """

    def __init__(self, url: str = MEMORY_URL) -> None:
        self.url = url
        self._engine = create_store_engine(url)
        self._sessions = sessionmaker(bind=self._engine, expire_on_commit=False)
        self._lock = threading.RLock()
        self._owner_locks: dict[str, threading.RLock] = {}

    @classmethod
    def open(cls, path: str | Path) -> TreeStore:
        """SQLite ファイルのストアを開く。ファイルが無ければ作成する。"""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        return cls(sqlite_url(path))

    def close(self) -> None:
        self._engine.dispose()

    def __enter__(self) -> TreeStore:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    @contextmanager
    def _session(self) -> Iterator[Session]:
        """1つのトランザクションを開く。例外が出ればロールバックする。"""
        with self._lock, self._sessions.begin() as session:
            yield session

    # ------------------------------------------------------------------
    # ロック
    # ------------------------------------------------------------------

    def owner_lock(self, owner_id: str) -> threading.RLock:
        """所有者ごとの書き込みロックを返す（Union 作成の直列化に使う）。"""
        with self._lock:
            lock = self._owner_locks.get(owner_id)
            if lock is None:
                lock = threading.RLock()
                self._owner_locks[owner_id] = lock
            return lock

    # ------------------------------------------------------------------
    # 人物
    # ------------------------------------------------------------------

    def find_persons(self, owner_id: str, parent_id: str | None = None) -> list[Person]:
        """所有者の人物を登録順で返す。

        Args:
            owner_id: 所有者ID
            parent_id: 指定した場合、parent_refs または旧 parents に
                       この人物を含む人物（＝子）のみを返す
        """
        stmt = select(PersonRecord).where(PersonRecord.owner_id == owner_id).order_by(PersonRecord.seq)
        with self._session() as session:
            persons = [record.to_person() for record in session.scalars(stmt)]
        if parent_id is not None:
            persons = [p for p in persons if _has_parent(p, parent_id)]
        return persons

    def count_persons(self, owner_id: str) -> int:
        stmt = select(func.count()).select_from(PersonRecord).where(PersonRecord.owner_id == owner_id)
        with self._session() as session:
            return session.scalar(stmt) or 0

    def get_person(self, person_id: str, owner_id: str) -> Person | None:
        """人物を返す。存在しない、または所有者が異なる場合は None。"""
        with self._session() as session:
            record = _person_record(session, person_id, owner_id)
            return record.to_person() if record is not None else None

    def require_person(self, person_id: str, owner_id: str) -> Person:
        person = self.get_person(person_id, owner_id)
        if person is None:
            raise NotFoundError(f"Person not found: {person_id}")
        return person

    def add_person(self, person: Person) -> Person:
        if not person.id:
            person.id = new_id()
        try:
            with self._session() as session:
                session.add(PersonRecord.from_person(person))
        except IntegrityError as e:
            raise StoreError(f"Person id already in use: {person.id}") from e
        log.debug("added person %s (owner=%s)", person.id, person.owner_id)
        return self.require_person(person.id, person.owner_id)

    def save_person(self, person: Person) -> Person:
        with self._session() as session:
            record = _person_record(session, person.id, person.owner_id)
            if record is None:
                raise NotFoundError(f"Person not found: {person.id}")
            record.update_from(person)
            return record.to_person()

    def update_person(self, person_id: str, owner_id: str, **patch: Any) -> Person:
        """人物の一部フィールドを更新する。"""
        with self._lock:
            person = self.require_person(person_id, owner_id)
            for name, value in patch.items():
                if name in ("id", "owner_id") or not hasattr(person, name):
                    raise StoreError(f"Cannot update field: {name}")
                setattr(person, name, value)
            return self.save_person(person)

    def delete_person(self, person_id: str, owner_id: str) -> None:
        """人物を削除し、他レコードからの参照も取り除く。

        この人物がパートナーである Union は削除し、残るパートナーの
        ``union_ids`` からも外す。
        """
        with self._session() as session:
            target = _person_record(session, person_id, owner_id)
            if target is None:
                raise NotFoundError(f"Person not found: {person_id}")

            unions = session.scalars(
                select(UnionRecord).where(UnionRecord.owner_id == owner_id)
            ).all()
            removed_unions = {u.id for u in unions if person_id in u.partner_ids}
            for union in unions:
                if union.id in removed_unions:
                    session.delete(union)
                elif person_id in union.children_ids:
                    union.children_ids = [c for c in union.children_ids if c != person_id]

            others = session.scalars(
                select(PersonRecord).where(
                    PersonRecord.owner_id == owner_id, PersonRecord.id != person_id
                )
            )
            for other in others:
                person = other.to_person()
                person.parent_refs = [r for r in person.parent_refs if r.parent_id != person_id]
                person.parents = [p for p in person.parents if p != person_id]
                person.children = [c for c in person.children if c != person_id]
                person.spouse = [s for s in person.spouse if s != person_id]
                person.union_ids = [u for u in person.union_ids if u not in removed_unions]
                other.update_from(person)

            session.delete(target)

        log.info(
            "deleted person %s and %d union(s) (owner=%s)",
            person_id,
            len(removed_unions),
            owner_id,
        )

    # ------------------------------------------------------------------
    # Union
    # ------------------------------------------------------------------

    def find_unions(
        self,
        owner_id: str,
        partner_id: str | None = None,
        partner_ids: Iterable[str] | None = None,
    ) -> list[Union]:
        """所有者の Union を登録順で返す。

        Args:
            owner_id: 所有者ID
            partner_id: 指定した場合、この人物をパートナーに含む Union のみ
            partner_ids: 指定した場合、パートナー組が完全一致する Union のみ
        """
        stmt = select(UnionRecord).where(UnionRecord.owner_id == owner_id)
        if partner_ids is not None:
            stmt = stmt.where(UnionRecord.pair == pair_key(list(partner_ids)))
        with self._session() as session:
            unions = [record.to_union() for record in session.scalars(stmt.order_by(UnionRecord.seq))]
        if partner_id is not None:
            unions = [u for u in unions if partner_id in u.partner_ids]
        return unions

    def get_union(self, union_id: str, owner_id: str) -> Union | None:
        with self._session() as session:
            record = _union_record(session, union_id, owner_id)
            return record.to_union() if record is not None else None

    def require_union(self, union_id: str, owner_id: str) -> Union:
        union = self.get_union(union_id, owner_id)
        if union is None:
            raise NotFoundError(f"Union not found: {union_id}")
        return union

    def insert_union(
        self,
        union: Union,
        unique: bool = True,
        persons: Iterable[Person] = (),
    ) -> Union:
        """Union を新規登録し、persons も同じトランザクションで保存する。

        ``unique`` が True の場合は (owner, パートナー組) の一意制約の対象になり、
        既存があれば DuplicateConflictError を送出する。False は重複を
        含み得る旧データの取り込み用で、一意制約の対象外として登録する。
        """
        if not union.id:
            union.id = new_id()
        persons = list(persons)
        try:
            with self._session() as session:
                session.add(UnionRecord.from_union(union, unique=unique))
                session.flush()
                _write_persons(session, persons)
        except IntegrityError as e:
            if unique and self._pair_taken(union):
                raise DuplicateConflictError(union.owner_id, union.partner_ids) from e
            raise StoreError(f"Union id already in use: {union.id}") from e
        return self.require_union(union.id, union.owner_id)

    def _pair_taken(self, union: Union) -> bool:
        stmt = select(UnionRecord.id).where(
            UnionRecord.owner_id == union.owner_id,
            UnionRecord.partner_key == pair_key(union.partner_ids),
        )
        with self._session() as session:
            return session.scalar(stmt) is not None

    def save_union(self, union: Union) -> Union:
        with self._session() as session:
            record = _union_record(session, union.id, union.owner_id)
            if record is None:
                raise NotFoundError(f"Union not found: {union.id}")
            record.update_from(union)
            return record.to_union()

    def delete_union(self, union_id: str, owner_id: str) -> None:
        with self._session() as session:
            record = _union_record(session, union_id, owner_id)
            if record is None:
                raise NotFoundError(f"Union not found: {union_id}")
            session.delete(record)

    def merge_unions(
        self,
        master: Union,
        duplicate_ids: Iterable[str],
        persons: Iterable[Person] = (),
    ) -> None:
        """重複 Union を削除し、残す Union と人物を1つのトランザクションで保存する。

        残す Union は一意制約の対象に戻す。
        """
        duplicate_ids = list(duplicate_ids)
        with self._session() as session:
            session.execute(
                delete(UnionRecord).where(
                    UnionRecord.owner_id == master.owner_id,
                    UnionRecord.id.in_(duplicate_ids),
                )
            )
            record = _union_record(session, master.id, master.owner_id)
            if record is None:
                raise NotFoundError(f"Union not found: {master.id}")
            record.update_from(master)
            record.partner_key = record.pair
            _write_persons(session, list(persons))

    # ------------------------------------------------------------------
    # まとめて書き込み
    # ------------------------------------------------------------------

    def commit(
        self,
        persons: Iterable[Person] = (),
        unions: Iterable[Union] = (),
    ) -> None:
        """複数レコードを1つのトランザクションで保存する。

        どれか1つでも存在しなければ NotFoundError を送出し、何も書き込まない。
        """
        persons = list(persons)
        unions = list(unions)
        with self._session() as session:
            _write_persons(session, persons)
            for union in unions:
                record = _union_record(session, union.id, union.owner_id)
                if record is None:
                    raise NotFoundError(f"Union not found: {union.id}")
                record.update_from(union)

    def reset(self, owner_id: str) -> None:
        """所有者の全人物・全 Union を削除する。"""
        with self._session() as session:
            session.execute(delete(UnionRecord).where(UnionRecord.owner_id == owner_id))
            session.execute(delete(PersonRecord).where(PersonRecord.owner_id == owner_id))

    def owners(self) -> list[str]:
        stmt = select(PersonRecord.owner_id).distinct().order_by(PersonRecord.owner_id)
        with self._session() as session:
            return list(session.scalars(stmt))

    # ------------------------------------------------------------------
    # 他の所有者との重複候補（読み取り専用）
    # ------------------------------------------------------------------

    def find_potential_matches(self, owner_id: str) -> list[tuple[Person, list[Person]]]:
        """他の所有者のツリーから同一人物の候補を探す。

        氏名が一致し、生年がともに分かる場合は差が2年以内のものを候補とする。
        """
        mine = aliased(PersonRecord)
        other = aliased(PersonRecord)
        stmt = (
            select(mine, other)
            .join(
                other,
                and_(
                    other.first_name == mine.first_name,
                    other.last_name == mine.last_name,
                    other.owner_id != mine.owner_id,
                ),
            )
            .where(mine.owner_id == owner_id)
            .order_by(mine.seq, other.seq)
        )
        grouped: dict[str, tuple[Person, list[Person]]] = {}
        with self._session() as session:
            for mine_record, other_record in session.execute(stmt):
                person = mine_record.to_person()
                candidate = other_record.to_person()
                if not _birth_years_close(person, candidate):
                    continue
                grouped.setdefault(person.id, (person, []))[1].append(candidate)
        return list(grouped.values())


def _person_record(session: Session, person_id: str, owner_id: str) -> PersonRecord | None:
    return session.scalar(
        select(PersonRecord).where(PersonRecord.id == person_id, PersonRecord.owner_id == owner_id)
    )


def _union_record(session: Session, union_id: str, owner_id: str) -> UnionRecord | None:
    return session.scalar(
        select(UnionRecord).where(UnionRecord.id == union_id, UnionRecord.owner_id == owner_id)
    )


def _write_persons(session: Session, persons: list[Person]) -> None:
    for person in persons:
        record = _person_record(session, person.id, person.owner_id)
        if record is None:
            raise NotFoundError(f"Person not found: {person.id}")
        record.update_from(person)


def _has_parent(person: Person, parent_id: str) -> bool:
    return parent_id in person.parents or person.get_parent_ref(parent_id) is not None


def _birth_years_close(a: Person, b: Person) -> bool:
    if a.birth_date is None or b.birth_date is None:
        return True
    return abs(a.birth_date.year - b.birth_date.year) <= 2
