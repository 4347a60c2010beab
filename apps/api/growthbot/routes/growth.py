from datetime import date
from typing import Optional

import logging

from fastapi import APIRouter, Depends, Query

from ..age import age_in_months, is_supported_age, parse_date
from ..errors import InvalidInputError
from ..percentile import calculate_percentile_async, interpret_percentile
from ..reference_table import get_reference_store
from ..schemas import MEASUREMENT_UNITS, AgeResponse, PercentileRequest, PercentileResponse

router = APIRouter(prefix="/api/v1", tags=["growth"])
logger = logging.getLogger(__name__)


def reference_dependency():
    """Resolved per request so tests can override it with their own table."""
    return get_reference_store()


@router.post("/percentile", response_model=PercentileResponse)
async def compute_percentile(
    payload: PercentileRequest,
    reference=Depends(reference_dependency),
) -> PercentileResponse:
    """Percentile of one measurement against the LMS reference table."""

    if payload.age_months is not None:
        age_months = payload.age_months
    elif payload.birth_date is not None:
        age_months = age_in_months(payload.birth_date, date.today())
    else:
        raise InvalidInputError("Provide age_months or birth_date", field="age_months")

    logger.info(
        "percentile request",
        extra={
            "sex": payload.sex.value,
            "measurement_type": payload.measurement_type.value,
            "age_months": age_months,
        },
    )
    result = await calculate_percentile_async(
        reference, payload.sex, payload.measurement_type, age_months, payload.value
    )
    return PercentileResponse(
        sex=result.sex,
        measurement_type=result.measurement_type,
        age_months=result.age_months,
        value=result.value,
        unit=MEASUREMENT_UNITS[result.measurement_type],
        z_score=round(result.z_score, 2),
        percentile=result.percentile,
        interpretation=interpret_percentile(result.percentile, result.measurement_type.value.replace("_", " ")),
    )


@router.get("/age", response_model=AgeResponse)
async def compute_age(
    birth_date: str = Query(..., description="Birth date, ISO 8601"),
    today: Optional[str] = Query(None, description="Reference date, ISO 8601; defaults to today"),
) -> AgeResponse:
    """Whole calendar months between two dates, as used to pick a reference row."""

    born = parse_date(birth_date, field="birth_date")
    now = parse_date(today, field="today") if today else date.today()
    months = age_in_months(born, now)
    return AgeResponse(birth_date=born, today=now, age_months=months, supported=is_supported_age(months))
