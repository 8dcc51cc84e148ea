"""人物・Union を保存するテーブル定義と、SQLAlchemy エンジンの作成。

関係情報のIDリストは JSON カラムに保存する。Union は
(owner_id, partner_key) の一意制約で、同じ所有者・同じパートナー組の
重複登録をデータベース側で防ぐ。
"""

from __future__ import annotations

import logging
from datetime import date
from pathlib import Path
from typing import Any

from sqlalchemy import (
    JSON,
    Date,
    Engine,
    Enum,
    Integer,
    String,
    Text,
    UniqueConstraint,
    create_engine,
    event,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.pool import StaticPool

from family_graph.models import Gender, ParentRef, Person, Union, UnionType, union_key

log = logging.getLogger(__name__)

MEMORY_URL = "sqlite://"


class Base(DeclarativeBase):
    pass


def pair_key(partner_ids: list[str] | tuple[str, ...]) -> str:
    """パートナー組を1つの文字列にする（ソート済み・重複除去済み）。"""
    return "|".join(union_key(partner_ids))


class PersonRecord(Base):
    __tablename__ = "persons"

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    first_name: Mapped[str] = mapped_column(String(128), nullable=False)
    last_name: Mapped[str] = mapped_column(String(128), default="", nullable=False)
    gender: Mapped[Gender] = mapped_column(Enum(Gender), default=Gender.OTHER, nullable=False)
    birth_date: Mapped[date | None] = mapped_column(Date())
    birth_place: Mapped[str | None] = mapped_column(String(256))
    death_date: Mapped[date | None] = mapped_column(Date())
    death_place: Mapped[str | None] = mapped_column(String(256))
    photo_url: Mapped[str | None] = mapped_column(String(512))
    notes: Mapped[str | None] = mapped_column(Text())

    # 構造化された関係情報
    parent_refs: Mapped[list[dict[str, Any]]] = mapped_column(JSON, default=list, nullable=False)
    union_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    # 旧スキーマ互換のIDリスト
    parents: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    children: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    spouse: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    extra: Mapped[dict[str, str]] = mapped_column("metadata", JSON, default=dict, nullable=False)

    def to_person(self) -> Person:
        return Person(
            id=self.id,
            owner_id=self.owner_id,
            first_name=self.first_name,
            last_name=self.last_name,
            gender=self.gender,
            birth_date=self.birth_date,
            birth_place=self.birth_place,
            death_date=self.death_date,
            death_place=self.death_place,
            photo_url=self.photo_url,
            notes=self.notes,
            parent_refs=[ParentRef.from_dict(r) for r in self.parent_refs],
            union_ids=list(self.union_ids),
            parents=list(self.parents),
            children=list(self.children),
            spouse=list(self.spouse),
            metadata=dict(self.extra),
        )

    def update_from(self, person: Person) -> None:
        """id / owner_id 以外のカラムを person の内容で置き換える。"""
        self.first_name = person.first_name
        self.last_name = person.last_name
        self.gender = person.gender
        self.birth_date = person.birth_date
        self.birth_place = person.birth_place
        self.death_date = person.death_date
        self.death_place = person.death_place
        self.photo_url = person.photo_url
        self.notes = person.notes
        self.parent_refs = [ref.to_dict() for ref in person.parent_refs]
        self.union_ids = list(person.union_ids)
        self.parents = list(person.parents)
        self.children = list(person.children)
        self.spouse = list(person.spouse)
        self.extra = dict(person.metadata)

    @classmethod
    def from_person(cls, person: Person) -> PersonRecord:
        record = cls(id=person.id, owner_id=person.owner_id)
        record.update_from(person)
        return record


class UnionRecord(Base):
    """Union の行。

    ``pair`` は検索・修復のためのパートナー組キーで常に設定する。
    ``partner_key`` は一意制約の対象で、重複検査をせずに取り込んだ旧データの
    行では NULL になる（NULL 同士は制約に掛からない）。
    """

    __tablename__ = "unions"
    __table_args__ = (
        UniqueConstraint("owner_id", "partner_key", name="uq_union_owner_partners"),
    )

    seq: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    id: Mapped[str] = mapped_column(String(64), unique=True, nullable=False)
    owner_id: Mapped[str] = mapped_column(String(64), index=True, nullable=False)
    pair: Mapped[str] = mapped_column(String(256), index=True, nullable=False)
    partner_key: Mapped[str | None] = mapped_column(String(256))
    partner_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    children_ids: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    type: Mapped[UnionType] = mapped_column(Enum(UnionType), default=UnionType.UNKNOWN, nullable=False)
    start_date: Mapped[date | None] = mapped_column(Date())
    end_date: Mapped[date | None] = mapped_column(Date())

    def to_union(self) -> Union:
        return Union(
            id=self.id,
            owner_id=self.owner_id,
            partner_ids=list(self.partner_ids),
            children_ids=list(self.children_ids),
            type=self.type,
            start_date=self.start_date,
            end_date=self.end_date,
        )

    def update_from(self, union: Union) -> None:
        self.pair = pair_key(union.partner_ids)
        if self.partner_key is not None:
            self.partner_key = self.pair
        self.partner_ids = list(union.partner_ids)
        self.children_ids = list(union.children_ids)
        self.type = union.type
        self.start_date = union.start_date
        self.end_date = union.end_date

    @classmethod
    def from_union(cls, union: Union, unique: bool = True) -> UnionRecord:
        key = pair_key(union.partner_ids)
        record = cls(
            id=union.id,
            owner_id=union.owner_id,
            pair=key,
            partner_key=key if unique else None,
        )
        record.update_from(union)
        return record


def sqlite_url(path: str | Path) -> str:
    return f"sqlite:///{Path(path)}"


def create_store_engine(url: str = MEMORY_URL) -> Engine:
    """エンジンを作成し、テーブルが無ければ作成する。

    インメモリの SQLite はすべてのセッションで同じ接続を共有する。
    """
    in_memory = url in (MEMORY_URL, "sqlite:///:memory:")
    if in_memory:
        engine = create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(url)

    if engine.dialect.name == "sqlite" and not in_memory:

        @event.listens_for(engine, "connect")
        def _set_sqlite_pragma(dbapi_connection: Any, _: Any) -> None:
            cursor = dbapi_connection.cursor()
            try:
                cursor.execute("PRAGMA journal_mode=WAL;")
                cursor.execute("PRAGMA busy_timeout=5000;")
            finally:
                cursor.close()

    Base.metadata.create_all(engine)
    log.debug("opened store database %s", engine.url.render_as_string(hide_password=True))
    return engine
