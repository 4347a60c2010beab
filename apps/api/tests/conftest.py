from __future__ import annotations

from datetime import date
from pathlib import Path
from typing import List

import pytest

from growthbot.conversations import ConversationContext
from growthbot.reference_table import ReferenceTable
from growthbot.schemas import GrowthReferenceRow, MeasurementType, Sex
from growthbot.sessions import MemorySessionStore

FIXTURES = Path(__file__).parent / "fixtures"
TODAY = date(2025, 5, 10)
BIRTH_DATE_24_MONTHS = "2023-05-10"


def make_row(sex: Sex, measurement_type: MeasurementType, age: int, L: float, M: float, S: float) -> GrowthReferenceRow:
    return GrowthReferenceRow(sex=sex, measurement_type=measurement_type, age_months=age, L=L, M=M, S=S)


def sample_rows() -> List[GrowthReferenceRow]:
    return [
        make_row(Sex.MALE, MeasurementType.HEIGHT, 0, 1, 49.9, 0.0379),
        make_row(Sex.MALE, MeasurementType.HEIGHT, 24, 1, 87.0, 0.04),
        make_row(Sex.MALE, MeasurementType.WEIGHT, 0, 0.3487, 3.3464, 0.14602),
        make_row(Sex.MALE, MeasurementType.WEIGHT, 24, -0.0137, 12.1515, 0.11426),
        make_row(Sex.FEMALE, MeasurementType.HEIGHT, 24, 1, 85.7, 0.0372),
        make_row(Sex.FEMALE, MeasurementType.WEIGHT, 24, -0.099, 11.4775, 0.12402),
    ]


@pytest.fixture
def table() -> ReferenceTable:
    return ReferenceTable(sample_rows())


@pytest.fixture
def store() -> MemorySessionStore:
    return MemorySessionStore()


@pytest.fixture
def ctx(store: MemorySessionStore, table: ReferenceTable) -> ConversationContext:
    return ConversationContext(store=store, reference=table, today=lambda: TODAY)
