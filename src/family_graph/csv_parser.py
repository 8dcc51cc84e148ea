from __future__ import annotations

import csv
from datetime import date
from pathlib import Path

from family_graph.models import Gender, Person

REQUIRED_COLUMNS = {"id", "first_name", "last_name", "gender", "parent_ids", "spouse_ids"}
OPTIONAL_COLUMNS = {"birth_date", "birth_place", "death_date", "death_place", "notes"}

_GENDER_ALIASES = {
    "M": Gender.MALE,
    "MALE": Gender.MALE,
    "F": Gender.FEMALE,
    "FEMALE": Gender.FEMALE,
    "": Gender.OTHER,
    "O": Gender.OTHER,
    "OTHER": Gender.OTHER,
}


class CsvParseError(Exception):
    """CSV読み込み時のエラー。"""


def parse_csv(path: str | Path, owner_id: str) -> list[Person]:
    """旧形式のCSVファイルを読み込み、人物のリストを返す。

    親・配偶者は旧スキーマの parents / spouse に入れ、children は
    parents から逆算する。構造化された関係への移行は
    maintenance.migrate_legacy_relationships で行う。

    Args:
        path: CSVファイルのパス
        owner_id: 読み込んだ人物の所有者ID

    Returns:
        Person のリスト（CSVの行順）

    Raises:
        CsvParseError: CSV読み込み・バリデーションエラー
    """
    path = Path(path)
    if not path.exists():
        raise CsvParseError(f"ファイルが見つかりません: {path}")

    with path.open(encoding="utf-8") as f:
        reader = csv.DictReader(f)

        if reader.fieldnames is None:
            raise CsvParseError("CSVファイルが空です")

        headers = set(reader.fieldnames)
        _validate_columns(headers)

        extra_columns = headers - REQUIRED_COLUMNS - OPTIONAL_COLUMNS
        rows = list(reader)

    persons = _parse_rows(rows, owner_id, extra_columns)
    _validate_references(persons)
    _fill_children(persons)
    return persons


def _validate_columns(headers: set[str]) -> None:
    """必須カラムの存在を確認する。"""
    missing = REQUIRED_COLUMNS - headers
    if missing:
        raise CsvParseError(f"必須カラムが不足しています: {', '.join(sorted(missing))}")


def _parse_rows(
    rows: list[dict[str, str]], owner_id: str, extra_columns: set[str]
) -> list[Person]:
    """CSV行をPersonオブジェクトのリストに変換する。"""
    persons: list[Person] = []
    seen_ids: set[str] = set()

    for i, row in enumerate(rows, start=2):  # ヘッダー行が1行目
        try:
            person = _parse_row(row, owner_id, extra_columns)
        except (ValueError, KeyError) as e:
            raise CsvParseError(f"{i}行目: {e}") from e

        if person.id in seen_ids:
            raise CsvParseError(f"{i}行目: IDが重複しています: {person.id}")
        seen_ids.add(person.id)
        persons.append(person)

    return persons


def _split_ids(value: str | None) -> list[str]:
    if not value or not value.strip():
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def _parse_date(value: str | None) -> date | None:
    if not value or not value.strip():
        return None
    return date.fromisoformat(value.strip())


def _optional(row: dict[str, str], key: str) -> str | None:
    value = (row.get(key) or "").strip()
    return value or None


def _parse_row(row: dict[str, str], owner_id: str, extra_columns: set[str]) -> Person:
    """1行のCSVデータをPersonオブジェクトに変換する。"""
    person_id = row["id"].strip()
    if not person_id:
        raise ValueError("IDが空です")

    first_name = row["first_name"].strip()
    if not first_name:
        raise ValueError("名前が空です")

    gender_str = (row["gender"] or "").strip().upper()
    if gender_str not in _GENDER_ALIASES:
        raise ValueError(f"不正な性別値です: {row['gender']}")

    metadata: dict[str, str] = {}
    for col in extra_columns:
        value = row.get(col, "")
        if value:
            metadata[col] = value

    return Person(
        id=person_id,
        owner_id=owner_id,
        first_name=first_name,
        last_name=row["last_name"].strip(),
        gender=_GENDER_ALIASES[gender_str],
        birth_date=_parse_date(row.get("birth_date")),
        birth_place=_optional(row, "birth_place"),
        death_date=_parse_date(row.get("death_date")),
        death_place=_optional(row, "death_place"),
        notes=_optional(row, "notes"),
        parents=_split_ids(row["parent_ids"]),
        spouse=_split_ids(row["spouse_ids"]),
        metadata=metadata,
    )


def _validate_references(persons: list[Person]) -> None:
    """参照整合性を検証する。"""
    all_ids = {p.id for p in persons}
    errors: list[str] = []

    for person in persons:
        for pid in person.parents:
            if pid not in all_ids:
                errors.append(
                    f"ID {person.id} ({person.display_name}): "
                    f"親ID {pid} が存在しません"
                )
            elif pid == person.id:
                errors.append(f"ID {person.id} ({person.display_name}): 自分自身が親です")

        for sid in person.spouse:
            if sid not in all_ids:
                errors.append(
                    f"ID {person.id} ({person.display_name}): "
                    f"配偶者ID {sid} が存在しません"
                )

    if errors:
        raise CsvParseError(
            "参照整合性エラー:\n" + "\n".join(f"  - {e}" for e in errors)
        )


def _fill_children(persons: list[Person]) -> None:
    """旧 children と旧 spouse の逆方向を補う。"""
    by_id = {p.id: p for p in persons}
    for person in persons:
        for pid in person.parents:
            parent = by_id[pid]
            if person.id not in parent.children:
                parent.children.append(person.id)
        for sid in person.spouse:
            spouse = by_id[sid]
            if person.id not in spouse.spouse:
                spouse.spouse.append(person.id)
