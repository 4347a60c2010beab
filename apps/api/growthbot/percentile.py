"""
Growth percentiles with the LMS method.

The LMS method summarises a skewed growth distribution at a given age with
three parameters:

- L (lambda): Box-Cox power
- M (mu): median
- S (sigma): coefficient of variation

Z-score = ((value/M)^L - 1) / (L * S)   when L != 0
Z-score = ln(value/M) / S               when L == 0

Percentile = 100 * Phi(Z), with Phi the standard normal CDF and
Phi(z) = (1 + erf(z / sqrt(2))) / 2. erf defaults to the Abramowitz & Stegun
7.1.26 closed form (absolute error ~1.5e-7); ``method="exact"`` uses scipy.

``method="legacy"`` reproduces the historical bot output bit for bit: it fed Z
straight into the erf polynomial without the sqrt(2) scaling, so it reports
Phi(Z * sqrt(2)). Only use it to compare against old reports.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import math
from typing import Awaitable, Literal, Optional, Protocol, Union

from scipy import stats

from .config import CONFIG
from .errors import InvalidInputError, LookupFailedError, NotFoundError
from .schemas import LMS, MeasurementType, PercentileResult, Sex

logger = logging.getLogger(__name__)

CdfMethod = Literal["approx", "exact", "legacy"]

# Abramowitz & Stegun 7.1.26
_P = 0.3275911
_A1 = 0.254829592
_A2 = -0.284496736
_A3 = 1.421413741
_A4 = -1.453152027
_A5 = 1.061405429


class ReferenceLookup(Protocol):
    def get(
        self, sex: Union[Sex, str, int], measurement_type: Union[MeasurementType, str], age_months: int
    ) -> Union[Optional[LMS], Awaitable[Optional[LMS]]]:
        ...


def lms_zscore(value: float, L: float, M: float, S: float) -> float:
    """Z-score of ``value`` under the LMS distribution (L, M, S)."""
    if L != 0:
        return (math.pow(value / M, L) - 1) / (L * S)
    return math.log(value / M) / S


def value_at_zscore(z: float, L: float, M: float, S: float) -> float:
    """Inverse of :func:`lms_zscore`: the measurement that sits at ``z``."""
    if L != 0:
        base = 1 + L * S * z
        if base <= 0:
            raise InvalidInputError(f"Z-score {z} is outside the LMS support for L={L}", field="z_score")
        return M * math.pow(base, 1 / L)
    return M * math.exp(S * z)


def erf_approx(x: float) -> float:
    """Abramowitz & Stegun 7.1.26, odd-extended to negative ``x``."""
    sign = -1.0 if x < 0 else 1.0
    t = 1.0 / (1.0 + _P * abs(x))
    erf = 1.0 - (((((_A5 * t + _A4) * t) + _A3) * t + _A2) * t + _A1) * t * math.exp(-x * x)
    return sign * erf


def normal_cdf_approx(z: float) -> float:
    return 0.5 * (1.0 + erf_approx(z / math.sqrt(2.0)))


def normal_cdf_legacy(z: float) -> float:
    return 0.5 * (1.0 + erf_approx(z))


def normal_cdf_exact(z: float) -> float:
    return float(stats.norm.cdf(z))


_CDF = {
    "approx": normal_cdf_approx,
    "exact": normal_cdf_exact,
    "legacy": normal_cdf_legacy,
}


def zscore_to_percentile(z: float, method: CdfMethod = "approx") -> float:
    """Percentile in [0, 100] (unrounded) for a Z-score."""
    try:
        cdf = _CDF[method]
    except KeyError as exc:
        raise ValueError(f"Unknown CDF method: {method!r}") from exc
    return min(100.0, max(0.0, cdf(z) * 100))


def percentile_to_zscore(percentile: float) -> float:
    if not 0 < percentile < 100:
        raise InvalidInputError(f"Percentile must be between 0 and 100 (exclusive), got {percentile}", field="percentile")
    return float(stats.norm.ppf(percentile / 100))


def interpret_percentile(percentile: float, measure: str) -> str:
    """Interpret a growth percentile."""
    if percentile < 3:
        return f"Very low {measure} (<3rd percentile)"
    elif percentile < 10:
        return f"Low {measure} (3rd-10th percentile)"
    elif percentile < 25:
        return f"Low-normal {measure} (10th-25th percentile)"
    elif percentile <= 75:
        return f"Normal {measure} (25th-75th percentile)"
    elif percentile <= 90:
        return f"High-normal {measure} (75th-90th percentile)"
    elif percentile <= 97:
        return f"High {measure} (90th-97th percentile)"
    else:
        return f"Very high {measure} (>97th percentile)"


def _discard(awaitable: object) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


def validate_measurement(value: float, age_months: int) -> float:
    """Reject inputs that would make the transform undefined (NaN) or meaningless."""
    if isinstance(age_months, bool) or not isinstance(age_months, int):
        raise InvalidInputError(f"age_months must be an integer, got {age_months!r}", field="age_months")
    if age_months < 0:
        raise InvalidInputError(f"age_months must not be negative, got {age_months}", field="age_months")
    try:
        number = float(value)
    except (TypeError, ValueError) as exc:
        raise InvalidInputError(f"Invalid measurement value: {value!r}", field="value") from exc
    if not math.isfinite(number) or number <= 0:
        raise InvalidInputError(f"Measurement value must be a positive number, got {value!r}", field="value")
    return number


def compute_from_lms(
    lms: LMS,
    value: float,
    *,
    sex: Sex,
    measurement_type: MeasurementType,
    age_months: int,
    method: Optional[CdfMethod] = None,
    decimals: Optional[int] = None,
) -> PercentileResult:
    try:
        z = lms_zscore(value, lms.L, lms.M, lms.S)
    except OverflowError as exc:
        raise InvalidInputError(
            f"Measurement value {value!r} is outside the range of the reference distribution", field="value"
        ) from exc
    raw = zscore_to_percentile(z, method or CONFIG.cdf_method)
    places = CONFIG.percentile_decimals if decimals is None else decimals
    return PercentileResult(
        sex=sex,
        measurement_type=measurement_type,
        age_months=age_months,
        value=value,
        z_score=z,
        percentile=round(raw, places),
    )


def calculate_percentile(
    table: ReferenceLookup,
    sex: Union[Sex, str, int],
    measurement_type: Union[MeasurementType, str],
    age_months: int,
    value: float,
    *,
    method: Optional[CdfMethod] = None,
    decimals: Optional[int] = None,
) -> PercentileResult:
    """Percentile of ``value`` for the given sex, measurement type and age bucket.

    Raises:
        InvalidInputError: non-positive value, non-integer or negative age,
            unknown sex or measurement type.
        NotFoundError: the table has no row for the key.
    """
    sex_value = Sex.parse(sex)
    mt_value = MeasurementType.parse(measurement_type)
    number = validate_measurement(value, age_months)
    lms = table.get(sex_value, mt_value, age_months)
    if inspect.isawaitable(lms):
        _discard(lms)
        raise TypeError("calculate_percentile needs a synchronous table; use calculate_percentile_async")
    if lms is None:
        raise NotFoundError(age_months, mt_value.value, sex_value.value)
    return compute_from_lms(
        lms,
        number,
        sex=sex_value,
        measurement_type=mt_value,
        age_months=age_months,
        method=method,
        decimals=decimals,
    )


async def calculate_percentile_async(
    table: ReferenceLookup,
    sex: Union[Sex, str, int],
    measurement_type: Union[MeasurementType, str],
    age_months: int,
    value: float,
    *,
    timeout: Optional[float] = None,
    method: Optional[CdfMethod] = None,
    decimals: Optional[int] = None,
) -> PercentileResult:
    """Same as :func:`calculate_percentile` for tables whose lookup may suspend.

    A lookup slower than ``timeout`` raises LookupFailedError, which is an
    infrastructure failure and not a "no data" answer.
    """
    sex_value = Sex.parse(sex)
    mt_value = MeasurementType.parse(measurement_type)
    number = validate_measurement(value, age_months)
    lookup = table.get(sex_value, mt_value, age_months)
    if inspect.isawaitable(lookup):
        limit = timeout if timeout is not None else CONFIG.lookup_timeout_seconds
        try:
            lms = await asyncio.wait_for(lookup, timeout=limit)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "reference lookup timed out",
                extra={"sex": sex_value.value, "measurement_type": mt_value.value, "age_months": age_months},
            )
            raise LookupFailedError(
                f"Reference lookup for {mt_value.value} at {age_months} months timed out after {limit}s"
            ) from exc
    else:
        lms = lookup
    if lms is None:
        raise NotFoundError(age_months, mt_value.value, sex_value.value)
    return compute_from_lms(
        lms,
        number,
        sex=sex_value,
        measurement_type=mt_value,
        age_months=age_months,
        method=method,
        decimals=decimals,
    )


def value_at_percentile(
    table: ReferenceLookup,
    sex: Union[Sex, str, int],
    measurement_type: Union[MeasurementType, str],
    age_months: int,
    percentile: float,
) -> float:
    """Measurement that sits at ``percentile`` for the key (used for reference lines)."""
    sex_value = Sex.parse(sex)
    mt_value = MeasurementType.parse(measurement_type)
    lms = table.get(sex_value, mt_value, age_months)
    if inspect.isawaitable(lms):
        _discard(lms)
        raise TypeError("value_at_percentile needs a synchronous table")
    if lms is None:
        raise NotFoundError(age_months, mt_value.value, sex_value.value)
    return value_at_zscore(percentile_to_zscore(percentile), lms.L, lms.M, lms.S)
