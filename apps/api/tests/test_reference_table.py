from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from growthbot.errors import BuildError, InvalidInputError, LookupFailedError
from growthbot.kv_client import KVError
from growthbot.reference_table import (
    ReferenceTable,
    RemoteReferenceTable,
    get_reference_store,
    publish_reference_store,
    reference_key,
)
from growthbot.schemas import LMS, MeasurementType, Sex

from conftest import make_row


class FakeHashClient:
    def __init__(self, hashes=None, error: Exception = None) -> None:
        self.hashes = hashes or {}
        self.error = error
        self.keys = []

    async def hgetall(self, key: str):
        self.keys.append(key)
        if self.error:
            raise self.error
        return self.hashes.get(key, {})


def test_get_returns_lms_for_known_key(table: ReferenceTable) -> None:
    assert table.get("male", "height", 24) == LMS(1, 87.0, 0.04)
    assert table.get(Sex.FEMALE, MeasurementType.WEIGHT, 24).L == pytest.approx(-0.099)
    assert table.get("male", "height", 25) is None
    assert len(table) == 6


def test_age_must_be_an_integer(table: ReferenceTable) -> None:
    with pytest.raises(InvalidInputError):
        table.get("male", "height", "24")
    with pytest.raises(InvalidInputError):
        table.get("male", "height", True)


def test_duplicate_rows_are_rejected() -> None:
    row = make_row(Sex.MALE, MeasurementType.HEIGHT, 24, 1, 87.0, 0.04)
    with pytest.raises(BuildError):
        ReferenceTable([row, row])


def test_reference_key_uses_sex_codes() -> None:
    assert reference_key("male", "height", 24) == "1:height:24"
    assert reference_key(Sex.FEMALE, MeasurementType.WEIGHT, 0) == "2:weight:0"
    assert reference_key(2, "bmi", 36) == "2:bmi:36"


def test_age_range(table: ReferenceTable) -> None:
    assert table.age_range("male", "height") == (0, 24)
    assert table.age_range("female", "head_circumference") is None


def test_json_artifact_survives_write_and_load(table: ReferenceTable, tmp_path: Path) -> None:
    path = table.write_json(tmp_path / "nested" / "lms_data.json")
    loaded = ReferenceTable.load_json(path)
    assert loaded.rows() == table.rows()
    assert loaded.to_nested()["male"]["height"]["24"] == {"L": 1.0, "M": 87.0, "S": 0.04}


def test_load_json_failures(tmp_path: Path) -> None:
    with pytest.raises(BuildError):
        ReferenceTable.load_json(tmp_path / "missing.json")

    broken = tmp_path / "broken.json"
    broken.write_text("{not json", encoding="utf-8")
    with pytest.raises(BuildError):
        ReferenceTable.load_json(broken)


@pytest.mark.parametrize(
    "data",
    [
        [],
        {"male": []},
        {"male": {"height": {"24": {"L": 1, "M": -87, "S": 0.04}}}},
        {"male": {"height": {"24": {"L": 1, "M": 87}}}},
        {"male": {"height": {"two": {"L": 1, "M": 87, "S": 0.04}}}},
        {"alien": {"height": {"24": {"L": 1, "M": 87, "S": 0.04}}}},
        {"male": {"height": {"24": {"L": "nan", "M": 87, "S": 0.04}}}},
    ],
)
def test_malformed_nested_data(data) -> None:
    with pytest.raises(BuildError):
        ReferenceTable.from_nested(data)


def test_remote_table_reads_hashes() -> None:
    client = FakeHashClient({"1:height:24": {"L": "1", "M": "87.0", "S": "0.04"}})
    remote = RemoteReferenceTable(client)
    assert asyncio.run(remote.get("male", "height", 24)) == LMS(1.0, 87.0, 0.04)
    assert asyncio.run(remote.get("male", "height", 36)) is None
    assert client.keys == ["1:height:24", "1:height:36"]


def test_remote_table_failures_are_lookup_errors() -> None:
    with pytest.raises(LookupFailedError):
        asyncio.run(RemoteReferenceTable(FakeHashClient(error=KVError("down"))).get("male", "height", 24))

    malformed = FakeHashClient({"1:height:24": {"L": "1", "M": "abc", "S": "0.04"}})
    with pytest.raises(LookupFailedError):
        asyncio.run(RemoteReferenceTable(malformed).get("male", "height", 24))


@pytest.mark.parametrize("row", [{"L": "1", "M": "0", "S": "0.04"}, {"L": "1", "M": "87.0", "S": "-0.04"}])
def test_remote_table_rejects_non_positive_median_or_spread(row) -> None:
    client = FakeHashClient({"1:height:24": row})
    with pytest.raises(LookupFailedError, match="must be positive"):
        asyncio.run(RemoteReferenceTable(client).get("male", "height", 24))


def test_published_store(table: ReferenceTable) -> None:
    publish_reference_store(table)
    try:
        assert get_reference_store() is table
    finally:
        publish_reference_store(None)
    with pytest.raises(RuntimeError):
        get_reference_store()
