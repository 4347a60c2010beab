from __future__ import annotations

import asyncio
import logging
import shutil
from pathlib import Path

import pytest

from growthbot.build_data import build_reference_table, load_csv_rows, main, seed_kv
from growthbot.errors import BuildError
from growthbot.reference_table import ReferenceTable
from growthbot.schemas import LMS, MeasurementType, Sex

from conftest import FIXTURES

SOURCE_DIR = FIXTURES / "lms"


class RecordingKV:
    def __init__(self) -> None:
        self.batches = []

    async def pipeline(self, commands):
        self.batches.append(list(commands))
        return [1 for _ in commands]


def copy_sources(tmp_path: Path) -> Path:
    target = tmp_path / "sources"
    shutil.copytree(SOURCE_DIR, target)
    return target


def test_build_from_fixture_sources() -> None:
    table = build_reference_table(SOURCE_DIR)
    assert len(table) == 14
    assert table.get("male", "height", 24) == LMS(1.0, 87.0, 0.04)
    assert table.age_range("female", "weight") == (0, 24)


def test_optional_tables_are_included(tmp_path: Path) -> None:
    sources = copy_sources(tmp_path)
    (sources / "male_bmi.csv").write_text("age_months,L,M,S\n24,-0.6187,16.0189,0.07785\n", encoding="utf-8")
    table = build_reference_table(sources)
    assert table.get("male", MeasurementType.BMI, 24).M == pytest.approx(16.0189)


def test_missing_required_file(tmp_path: Path) -> None:
    sources = copy_sources(tmp_path)
    (sources / "female_weight.csv").unlink()
    with pytest.raises(BuildError, match="female_weight.csv"):
        build_reference_table(sources)


@pytest.mark.parametrize(
    "content, message",
    [
        ("Month,L,M,S\n0,1,49.9,0.0379\n1,1,abc,0.04\n", "line 3"),
        ("Month,L,M,S\n0.5,1,49.9,0.0379\n", "whole month"),
        ("Month,L,M,S\n0,1,49.9,0\n", "positive"),
        ("Month,L,M,S\n0,1,inf,0.04\n", "line 2: non-finite"),
        ("Month,L,M,S\n0,-Infinity,49.9,0.04\n", "non-finite"),
        ("Month,L,M\n0,1,49.9\n", "missing columns"),
        ("Week,L,M,S\n0,1,49.9,0.0379\n", "missing columns"),
        ("Month,L,M,S\n", "no data rows"),
    ],
)
def test_malformed_csv_fails_the_build(tmp_path: Path, content: str, message: str) -> None:
    path = tmp_path / "male_height.csv"
    path.write_text(content, encoding="utf-8")
    with pytest.raises(BuildError, match=message):
        load_csv_rows(path, Sex.MALE, MeasurementType.HEIGHT)


def test_seed_kv_writes_hashes_in_batches() -> None:
    table = build_reference_table(SOURCE_DIR)
    client = RecordingKV()
    written = asyncio.run(seed_kv(table, client, batch_size=5))
    assert written == 14
    assert [len(batch) for batch in client.batches] == [5, 5, 4]
    commands = {cmd[1]: cmd for batch in client.batches for cmd in batch}
    assert commands["1:height:24"] == ["HSET", "1:height:24", "L", 1.0, "M", 87.0, "S", 0.04]
    assert "2:weight:0" in commands


def test_cli_build_and_check(tmp_path: Path) -> None:
    out = tmp_path / "lms_data.json"
    assert main(["build", "--data-dir", str(SOURCE_DIR), "--out", str(out)]) == 0
    assert len(ReferenceTable.load_json(out)) == 14
    assert main(["check", "--table", str(out)]) == 0


def test_cli_reports_build_errors(tmp_path: Path) -> None:
    assert main(["build", "--data-dir", str(tmp_path / "nowhere"), "--out", str(tmp_path / "out.json")]) == 1
    assert main(["check", "--table", str(tmp_path / "missing.json")]) == 1


def test_cli_logs_row_count(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    caplog.set_level(logging.INFO, logger="growthbot.build_data")
    out = tmp_path / "lms_data.json"
    assert main(["build", "--data-dir", str(SOURCE_DIR), "--out", str(out)]) == 0
    assert f"Wrote 14 rows to {out}" in caplog.messages
