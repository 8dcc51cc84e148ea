from __future__ import annotations

import textwrap
from datetime import date
from pathlib import Path

import pytest

from family_graph.csv_parser import CsvParseError, parse_csv
from family_graph.models import Gender

OWNER = "owner-1"


def _write(tmp_path: Path, content: str, name: str = "test.csv") -> Path:
    csv_path = tmp_path / name
    csv_path.write_text(textwrap.dedent(content), encoding="utf-8")
    return csv_path


@pytest.fixture()
def sample_csv(tmp_path: Path) -> Path:
    """最小限のサンプルCSVを作成する。"""
    return _write(
        tmp_path,
        """\
        id,first_name,last_name,gender,birth_date,parent_ids,spouse_ids,occupation
        1,太郎,山田,M,1940-03-15,,2,農家
        2,花子,山田,F,1942-07-22,,1,
        3,一郎,山田,M,1965-01-10,"1,2",4,
        4,美咲,佐藤,F,1967-05-30,,3,
        """,
    )


class TestParseCSV:
    def test_parse_basic(self, sample_csv: Path) -> None:
        persons = parse_csv(sample_csv, OWNER)
        assert [p.id for p in persons] == ["1", "2", "3", "4"]
        assert all(p.owner_id == OWNER for p in persons)

    def test_person_fields(self, sample_csv: Path) -> None:
        taro = parse_csv(sample_csv, OWNER)[0]
        assert taro.first_name == "太郎"
        assert taro.last_name == "山田"
        assert taro.birth_date == date(1940, 3, 15)
        assert taro.gender is Gender.MALE
        assert taro.parents == []
        assert taro.spouse == ["2"]

    def test_parent_ids_parsed(self, sample_csv: Path) -> None:
        ichiro = parse_csv(sample_csv, OWNER)[2]
        assert ichiro.parents == ["1", "2"]
        # 構造化された参照は移行時に作る
        assert ichiro.parent_refs == []

    def test_children_filled(self, sample_csv: Path) -> None:
        persons = {p.id: p for p in parse_csv(sample_csv, OWNER)}
        assert persons["1"].children == ["3"]
        assert persons["2"].children == ["3"]
        assert persons["4"].children == []

    def test_extra_columns_to_metadata(self, sample_csv: Path) -> None:
        persons = parse_csv(sample_csv, OWNER)
        assert persons[0].metadata == {"occupation": "農家"}
        assert persons[1].metadata == {}

    def test_one_sided_spouse_made_symmetric(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,parent_ids,spouse_ids
            1,太郎,,M,,2
            2,花子,,F,,
            """,
        )
        persons = parse_csv(path, OWNER)
        assert persons[1].spouse == ["1"]

    def test_optional_columns_missing(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,parent_ids,spouse_ids
            1,太郎,,,,
            """,
        )
        person = parse_csv(path, OWNER)[0]
        assert person.birth_date is None
        assert person.gender is Gender.OTHER


class TestParseCSVErrors:
    def test_file_not_found(self, tmp_path: Path) -> None:
        with pytest.raises(CsvParseError, match="見つかりません"):
            parse_csv(tmp_path / "none.csv", OWNER)

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.csv"
        path.write_text("", encoding="utf-8")
        with pytest.raises(CsvParseError, match="空"):
            parse_csv(path, OWNER)

    def test_missing_columns(self, tmp_path: Path) -> None:
        path = _write(tmp_path, "id,first_name\n1,太郎\n")
        with pytest.raises(CsvParseError, match="必須カラム"):
            parse_csv(path, OWNER)

    def test_duplicate_id(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,parent_ids,spouse_ids
            1,太郎,,M,,
            1,次郎,,M,,
            """,
        )
        with pytest.raises(CsvParseError, match="3行目"):
            parse_csv(path, OWNER)

    def test_invalid_gender(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,parent_ids,spouse_ids
            1,太郎,,X,,
            """,
        )
        with pytest.raises(CsvParseError, match="性別"):
            parse_csv(path, OWNER)

    def test_invalid_date(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,birth_date,parent_ids,spouse_ids
            1,太郎,,M,1940-13-01,,
            """,
        )
        with pytest.raises(CsvParseError, match="2行目"):
            parse_csv(path, OWNER)

    def test_unknown_parent(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,parent_ids,spouse_ids
            1,太郎,,M,9,
            """,
        )
        with pytest.raises(CsvParseError, match="親ID 9"):
            parse_csv(path, OWNER)

    def test_self_parent(self, tmp_path: Path) -> None:
        path = _write(
            tmp_path,
            """\
            id,first_name,last_name,gender,parent_ids,spouse_ids
            1,太郎,,M,1,
            """,
        )
        with pytest.raises(CsvParseError, match="自分自身"):
            parse_csv(path, OWNER)


class TestSampleCSV:
    def test_parse_sample(self) -> None:
        """examples/sample.csv を読み込める。"""
        sample = Path(__file__).resolve().parent.parent / "examples" / "sample.csv"
        persons = {p.id: p for p in parse_csv(sample, OWNER)}
        assert len(persons) == 9
        assert persons["4"].spouse == ["3", "7"]
        assert persons["1"].metadata == {}
        assert persons["1"].birth_place == "東京"
        assert persons["1"].death_date == date(2015, 11, 2)
