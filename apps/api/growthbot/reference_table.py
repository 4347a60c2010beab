"""LMS reference table store: (sex, measurement type, age in months) -> (L, M, S)."""
from __future__ import annotations

import json
import logging
import math
from pathlib import Path
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple, Union

from pydantic import ValidationError

from .errors import BuildError, InvalidInputError, LookupFailedError
from .kv_client import KVClient, KVError
from .schemas import LMS, GrowthReferenceRow, MeasurementType, Sex

logger = logging.getLogger(__name__)

Key = Tuple[Sex, MeasurementType, int]


def _check_age(age_months: Any) -> int:
    if isinstance(age_months, bool) or not isinstance(age_months, int):
        raise InvalidInputError(f"age_months must be an integer, got {age_months!r}", field="age_months")
    return age_months


def reference_key(sex: Union[Sex, str, int], measurement_type: Union[MeasurementType, str], age_months: int) -> str:
    """KV key for one row, e.g. ``1:height:24`` (1 = male, 2 = female)."""
    return f"{Sex.parse(sex).code}:{MeasurementType.parse(measurement_type).value}:{_check_age(age_months)}"


class ReferenceTable:
    """Immutable in-process table. Built once, then only read."""

    def __init__(self, rows: Iterable[GrowthReferenceRow]) -> None:
        index: Dict[Key, LMS] = {}
        for row in rows:
            if row.key in index:
                sex, measurement, age = row.key
                raise BuildError(f"Duplicate reference row for {sex.value}/{measurement.value}/{age} months")
            index[row.key] = row.lms
        self._index = index

    def get(
        self,
        sex: Union[Sex, str, int],
        measurement_type: Union[MeasurementType, str],
        age_months: int,
    ) -> Optional[LMS]:
        key = (Sex.parse(sex), MeasurementType.parse(measurement_type), _check_age(age_months))
        return self._index.get(key)

    def __len__(self) -> int:
        return len(self._index)

    def __iter__(self) -> Iterator[GrowthReferenceRow]:
        return iter(self.rows())

    def rows(self) -> List[GrowthReferenceRow]:
        return [
            GrowthReferenceRow(sex=sex, measurement_type=mt, age_months=age, L=lms.L, M=lms.M, S=lms.S)
            for (sex, mt, age), lms in sorted(self._index.items(), key=lambda item: (item[0][0].value, item[0][1].value, item[0][2]))
        ]

    def age_range(self, sex: Union[Sex, str], measurement_type: Union[MeasurementType, str]) -> Optional[Tuple[int, int]]:
        sex_value = Sex.parse(sex)
        mt_value = MeasurementType.parse(measurement_type)
        ages = [age for (s, mt, age) in self._index if s == sex_value and mt == mt_value]
        if not ages:
            return None
        return min(ages), max(ages)

    def to_nested(self) -> Dict[str, Dict[str, Dict[str, Dict[str, float]]]]:
        nested: Dict[str, Dict[str, Dict[str, Dict[str, float]]]] = {}
        for row in self.rows():
            by_type = nested.setdefault(row.sex.value, {}).setdefault(row.measurement_type.value, {})
            by_type[str(row.age_months)] = {"L": row.L, "M": row.M, "S": row.S}
        return nested

    @classmethod
    def from_nested(cls, data: Dict[str, Any]) -> "ReferenceTable":
        """Parse the ``{sex: {type: {age: {L, M, S}}}}`` layout of lms_data.json."""
        if not isinstance(data, dict):
            raise BuildError("LMS data must be a JSON object keyed by sex")
        rows: List[GrowthReferenceRow] = []
        for sex_name, by_type in data.items():
            if not isinstance(by_type, dict):
                raise BuildError(f"LMS data for sex {sex_name!r} must be an object")
            for type_name, by_age in by_type.items():
                if not isinstance(by_age, dict):
                    raise BuildError(f"LMS data for {sex_name}/{type_name} must be an object")
                for age_text, params in by_age.items():
                    label = f"{sex_name}/{type_name}/{age_text}"
                    try:
                        rows.append(
                            GrowthReferenceRow(
                                sex=Sex.parse(sex_name),
                                measurement_type=MeasurementType.parse(type_name),
                                age_months=int(age_text),
                                L=_finite(params["L"]),
                                M=_finite(params["M"]),
                                S=_finite(params["S"]),
                            )
                        )
                    except (KeyError, TypeError, ValueError, ValidationError, InvalidInputError) as exc:
                        raise BuildError(f"Malformed LMS row {label}: {exc}") from exc
        return cls(rows)

    @classmethod
    def load_json(cls, path: Union[str, Path]) -> "ReferenceTable":
        path = Path(path)
        if not path.exists():
            raise BuildError(f"LMS data file not found: {path}. Run `python -m growthbot.build_data build` first.")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise BuildError(f"LMS data file {path} is not valid JSON: {exc}") from exc
        table = cls.from_nested(data)
        logger.info("loaded LMS reference table", extra={"path": str(path), "rows": len(table)})
        return table

    def write_json(self, path: Union[str, Path]) -> Path:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(self.to_nested(), ensure_ascii=False, indent=2), encoding="utf-8")
        return path


def _finite(value: Any) -> float:
    number = float(value)
    if not math.isfinite(number):
        raise ValueError(f"non-finite value {value!r}")
    return number


class RemoteReferenceTable:
    """Reads LMS rows stored as hashes in the KV service (one hash per key)."""

    def __init__(self, client: KVClient) -> None:
        self.client = client

    async def get(
        self,
        sex: Union[Sex, str, int],
        measurement_type: Union[MeasurementType, str],
        age_months: int,
    ) -> Optional[LMS]:
        key = reference_key(sex, measurement_type, age_months)
        try:
            data = await self.client.hgetall(key)
        except KVError as exc:
            raise LookupFailedError(f"Reference lookup for {key} failed: {exc}") from exc
        if not data or "L" not in data:
            return None
        try:
            lms = LMS(_finite(data["L"]), _finite(data["M"]), _finite(data["S"]))
        except (KeyError, ValueError) as exc:
            raise LookupFailedError(f"Reference row {key} is malformed: {exc}") from exc
        if lms.M <= 0 or lms.S <= 0:
            raise LookupFailedError(f"Reference row {key} is malformed: M and S must be positive")
        return lms


ReferenceStore = Union[ReferenceTable, RemoteReferenceTable]

_PUBLISHED: Optional[ReferenceStore] = None


def publish_reference_store(store: Optional[ReferenceStore]) -> None:
    """Install the process-wide store; done once at startup before serving."""
    global _PUBLISHED
    _PUBLISHED = store


def get_reference_store() -> ReferenceStore:
    if _PUBLISHED is None:
        raise RuntimeError("LMS reference table has not been loaded.")
    return _PUBLISHED
