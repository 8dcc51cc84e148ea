from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from enum import Enum
from typing import Any, Iterable


class Gender(Enum):
    MALE = "male"
    FEMALE = "female"
    OTHER = "other"


class RelationshipType(Enum):
    """親子関係の種類。"""

    BIOLOGICAL = "biological"
    ADOPTIVE = "adoptive"
    STEP = "step"
    FOSTER = "foster"

    @classmethod
    def parse(cls, value: str | RelationshipType | None) -> RelationshipType:
        """文字列から変換する。旧スキーマの ``bio`` も受け付ける。"""
        if isinstance(value, RelationshipType):
            return value
        if value is None or value == "" or value == "bio":
            return cls.BIOLOGICAL
        return cls(value)


class UnionType(Enum):
    MARRIAGE = "marriage"
    CIVIL = "civil"
    RELATIONSHIP = "relationship"
    UNKNOWN = "unknown"


def union_key(partner_ids: Iterable[str]) -> tuple[str, ...]:
    """パートナーIDを正規化（重複除去・ソート）したキーを返す。"""
    return tuple(sorted(set(partner_ids)))


def _date_to_str(value: date | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass
class ParentRef:
    """子から親への型付き参照。"""

    parent_id: str
    type: RelationshipType = RelationshipType.BIOLOGICAL
    certainty: float = 1.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "parent_id": self.parent_id,
            "type": self.type.value,
            "certainty": self.certainty,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ParentRef:
        return cls(
            parent_id=str(data["parent_id"]),
            type=RelationshipType.parse(data.get("type")),
            certainty=float(data.get("certainty", 1.0)),
        )


@dataclass
class Person:
    """個人情報を表すデータクラス。

    ``parent_refs`` / ``union_ids`` が構造化された関係情報。
    ``parents`` / ``children`` / ``spouse`` は旧スキーマ互換の単純なIDリストで、
    構造化された情報が欠けている場合の補助として扱う。
    """

    id: str
    owner_id: str
    first_name: str
    last_name: str = ""
    gender: Gender = Gender.OTHER
    birth_date: date | None = None
    birth_place: str | None = None
    death_date: date | None = None
    death_place: str | None = None
    photo_url: str | None = None
    notes: str | None = None
    parent_refs: list[ParentRef] = field(default_factory=list)
    union_ids: list[str] = field(default_factory=list)
    parents: list[str] = field(default_factory=list)
    children: list[str] = field(default_factory=list)
    spouse: list[str] = field(default_factory=list)
    metadata: dict[str, str] = field(default_factory=dict)

    @property
    def display_name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()

    def get_parent_ref(self, parent_id: str) -> ParentRef | None:
        for ref in self.parent_refs:
            if ref.parent_id == parent_id:
                return ref
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "owner_id": self.owner_id,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "gender": self.gender.value,
            "birth_date": _date_to_str(self.birth_date),
            "birth_place": self.birth_place,
            "death_date": _date_to_str(self.death_date),
            "death_place": self.death_place,
            "photo_url": self.photo_url,
            "notes": self.notes,
            "parent_refs": [ref.to_dict() for ref in self.parent_refs],
            "union_ids": list(self.union_ids),
            "parents": list(self.parents),
            "children": list(self.children),
            "spouse": list(self.spouse),
            "metadata": dict(self.metadata),
        }


@dataclass
class Union:
    """1〜2人のパートナーによる関係（婚姻など）。

    ``children_ids`` は明示的に登録された子のみを保持する。
    両親が共通でも自動では追加しない（連れ子・養子を表現するため）。
    """

    id: str
    owner_id: str
    partner_ids: list[str] = field(default_factory=list)
    children_ids: list[str] = field(default_factory=list)
    type: UnionType = UnionType.UNKNOWN
    start_date: date | None = None
    end_date: date | None = None

    def __post_init__(self) -> None:
        self.partner_ids = list(union_key(self.partner_ids))

    @property
    def key(self) -> tuple[str, ...]:
        return union_key(self.partner_ids)

    def other_partner(self, person_id: str) -> str | None:
        for pid in self.partner_ids:
            if pid != person_id:
                return pid
        return None
