#!/usr/bin/env python3
"""
Build the LMS reference table from CSV sources and optionally seed the KV store.

Usage:
    python -m growthbot.build_data build --data-dir ./data --out ./data/lms_data.json
    python -m growthbot.build_data seed --data-dir ./data
    python -m growthbot.build_data check --table ./data/lms_data.json

Each CSV holds one (sex, measurement type) table with an age column (``Month``
or ``age_months``) and the ``L``, ``M``, ``S`` columns.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from .errors import BuildError
from .kv_client import KVClient, KVError, get_kv_client
from .reference_table import ReferenceTable, reference_key
from .schemas import GrowthReferenceRow, MeasurementType, Sex

logger = logging.getLogger(__name__)

AGE_COLUMNS = ("Month", "age_months", "month", "Age")

REQUIRED_FILES: Dict[str, Tuple[Sex, MeasurementType]] = {
    "male_height.csv": (Sex.MALE, MeasurementType.HEIGHT),
    "male_weight.csv": (Sex.MALE, MeasurementType.WEIGHT),
    "female_height.csv": (Sex.FEMALE, MeasurementType.HEIGHT),
    "female_weight.csv": (Sex.FEMALE, MeasurementType.WEIGHT),
}

OPTIONAL_FILES: Dict[str, Tuple[Sex, MeasurementType]] = {
    "male_head_circumference.csv": (Sex.MALE, MeasurementType.HEAD_CIRCUMFERENCE),
    "female_head_circumference.csv": (Sex.FEMALE, MeasurementType.HEAD_CIRCUMFERENCE),
    "male_bmi.csv": (Sex.MALE, MeasurementType.BMI),
    "female_bmi.csv": (Sex.FEMALE, MeasurementType.BMI),
}


def _age_column(columns: Sequence[str]) -> Optional[str]:
    for name in AGE_COLUMNS:
        if name in columns:
            return name
    return None


def load_csv_rows(path: Path, sex: Sex, measurement_type: MeasurementType) -> List[GrowthReferenceRow]:
    """Parse one source table; any malformed row fails the whole build."""
    try:
        df = pd.read_csv(path, skip_blank_lines=True)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as exc:
        raise BuildError(f"{path.name}: unreadable CSV ({exc})") from exc

    df.columns = [str(col).strip() for col in df.columns]
    age_col = _age_column(df.columns)
    missing = {"L", "M", "S"} - set(df.columns)
    if age_col is None or missing:
        required = sorted(missing | ({"Month|age_months"} if age_col is None else set()))
        raise BuildError(f"{path.name} missing columns: {required}")

    numeric = df[[age_col, "L", "M", "S"]].apply(pd.to_numeric, errors="coerce")
    bad = numeric[numeric.isna().any(axis=1)]
    if not bad.empty:
        line = int(bad.index[0]) + 2
        raise BuildError(f"{path.name} line {line}: non-numeric value in {age_col}/L/M/S")
    infinite = numeric[~np.isfinite(numeric).all(axis=1)]
    if not infinite.empty:
        line = int(infinite.index[0]) + 2
        raise BuildError(f"{path.name} line {line}: non-finite value in {age_col}/L/M/S")

    rows: List[GrowthReferenceRow] = []
    for index, record in numeric.iterrows():
        age = float(record[age_col])
        line = int(index) + 2
        if not age.is_integer() or age < 0:
            raise BuildError(f"{path.name} line {line}: age must be a non-negative whole month, got {age}")
        if record["M"] <= 0 or record["S"] <= 0:
            raise BuildError(f"{path.name} line {line}: M and S must be positive")
        rows.append(
            GrowthReferenceRow(
                sex=sex,
                measurement_type=measurement_type,
                age_months=int(age),
                L=float(record["L"]),
                M=float(record["M"]),
                S=float(record["S"]),
            )
        )
    if not rows:
        raise BuildError(f"{path.name} has no data rows")
    logger.info("parsed %s", path.name, extra={"rows": len(rows), "sex": sex.value, "measurement": measurement_type.value})
    return rows


def build_reference_table(data_dir: Path) -> ReferenceTable:
    data_dir = Path(data_dir)
    rows: List[GrowthReferenceRow] = []
    for filename, (sex, measurement_type) in REQUIRED_FILES.items():
        path = data_dir / filename
        if not path.exists():
            raise BuildError(f"Required source table not found in {data_dir}: {filename}")
        rows.extend(load_csv_rows(path, sex, measurement_type))
    for filename, (sex, measurement_type) in OPTIONAL_FILES.items():
        path = data_dir / filename
        if path.exists():
            rows.extend(load_csv_rows(path, sex, measurement_type))
    return ReferenceTable(rows)


async def seed_kv(table: ReferenceTable, client: KVClient, *, batch_size: int = 500) -> int:
    """Write every row as a hash ``{L, M, S}``; returns the number of rows written."""
    commands = [
        ["HSET", reference_key(row.sex, row.measurement_type, row.age_months), "L", row.L, "M", row.M, "S", row.S]
        for row in table.rows()
    ]
    for start in range(0, len(commands), batch_size):
        await client.pipeline(commands[start : start + batch_size])
    return len(commands)


def cmd_build(args: argparse.Namespace) -> int:
    table = build_reference_table(Path(args.data_dir))
    out = table.write_json(Path(args.out))
    logger.info("Wrote %d rows to %s", len(table), out)
    return 0


def cmd_seed(args: argparse.Namespace) -> int:
    table = build_reference_table(Path(args.data_dir))
    written = asyncio.run(seed_kv(table, get_kv_client(), batch_size=args.batch_size))
    logger.info("Seeded %d rows into the KV store", written)
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    table = ReferenceTable.load_json(Path(args.table))
    for sex in Sex:
        for measurement_type in MeasurementType:
            span = table.age_range(sex, measurement_type)
            if span:
                logger.info("%-6s %-18s %d..%d months", sex.value, measurement_type.value, span[0], span[1])
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="growthbot.build_data", description="LMS reference table tooling")
    sub = parser.add_subparsers(dest="command", required=True)

    build = sub.add_parser("build", help="Convert CSV tables into lms_data.json")
    build.add_argument("--data-dir", default="./data")
    build.add_argument("--out", default="./data/lms_data.json")
    build.set_defaults(func=cmd_build)

    seed = sub.add_parser("seed", help="Push CSV tables into the KV store")
    seed.add_argument("--data-dir", default="./data")
    seed.add_argument("--batch-size", type=int, default=500)
    seed.set_defaults(func=cmd_seed)

    check = sub.add_parser("check", help="Summarise a built lms_data.json")
    check.add_argument("--table", default="./data/lms_data.json")
    check.set_defaults(func=cmd_check)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except (BuildError, KVError, RuntimeError) as exc:
        logger.error("Build failed: %s", exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
