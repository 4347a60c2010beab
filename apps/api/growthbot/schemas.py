"""Pydantic schemas shared across the API."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from .errors import InvalidInputError


class Sex(str, Enum):
    MALE = "male"
    FEMALE = "female"

    @classmethod
    def parse(cls, value: Union["Sex", str, int]) -> "Sex":
        """Accept the spellings seen in chat, the KV key codes and the enum itself."""
        if isinstance(value, Sex):
            return value
        if isinstance(value, int) and not isinstance(value, bool):
            for sex, code in SEX_CODES.items():
                if code == value:
                    return sex
            raise InvalidInputError(f"Unknown sex code: {value}", field="sex")
        text = str(value or "").strip().lower()
        if text in _SEX_ALIASES:
            return _SEX_ALIASES[text]
        raise InvalidInputError(f"Unknown sex: {value!r}", field="sex")

    @property
    def code(self) -> int:
        return SEX_CODES[self]


SEX_CODES = {Sex.MALE: 1, Sex.FEMALE: 2}

_SEX_ALIASES = {
    "male": Sex.MALE,
    "m": Sex.MALE,
    "boy": Sex.MALE,
    "1": Sex.MALE,
    "남자": Sex.MALE,
    "남": Sex.MALE,
    "남아": Sex.MALE,
    "아들": Sex.MALE,
    "female": Sex.FEMALE,
    "f": Sex.FEMALE,
    "girl": Sex.FEMALE,
    "2": Sex.FEMALE,
    "여자": Sex.FEMALE,
    "여": Sex.FEMALE,
    "여아": Sex.FEMALE,
    "딸": Sex.FEMALE,
}


class MeasurementType(str, Enum):
    HEIGHT = "height"
    WEIGHT = "weight"
    HEAD_CIRCUMFERENCE = "head_circumference"
    BMI = "bmi"

    @classmethod
    def parse(cls, value: Union["MeasurementType", str]) -> "MeasurementType":
        if isinstance(value, MeasurementType):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as exc:
            raise InvalidInputError(f"Unknown measurement type: {value!r}", field="measurement_type") from exc


MEASUREMENT_UNITS = {
    MeasurementType.HEIGHT: "cm",
    MeasurementType.WEIGHT: "kg",
    MeasurementType.HEAD_CIRCUMFERENCE: "cm",
    MeasurementType.BMI: "kg/m²",
}


@dataclass(frozen=True)
class LMS:
    L: float
    M: float
    S: float


class GrowthReferenceRow(BaseModel):
    """One row of a growth-reference table, keyed by (sex, measurement_type, age_months)."""

    model_config = ConfigDict(frozen=True)

    sex: Sex
    measurement_type: MeasurementType
    age_months: int = Field(..., ge=0)
    L: float
    M: float = Field(..., gt=0)
    S: float = Field(..., gt=0)

    @property
    def key(self) -> tuple[Sex, MeasurementType, int]:
        return (self.sex, self.measurement_type, self.age_months)

    @property
    def lms(self) -> LMS:
        return LMS(self.L, self.M, self.S)


class PercentileResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    sex: Sex
    measurement_type: MeasurementType
    age_months: int
    value: float
    z_score: float
    percentile: float = Field(..., ge=0, le=100)

    @property
    def top_percent(self) -> float:
        """Share of the reference population at or above this value."""
        return round(100 - self.percentile, 1)


class PercentileRequest(BaseModel):
    sex: Sex
    measurement_type: MeasurementType
    age_months: Optional[int] = Field(default=None, description="Age bucket in whole months.")
    birth_date: Optional[date] = Field(default=None, description="Used when age_months is omitted.")
    value: float = Field(..., description="Measurement in cm or kg.")


class PercentileResponse(BaseModel):
    sex: Sex
    measurement_type: MeasurementType
    age_months: int
    value: float
    unit: str
    z_score: float
    percentile: float
    interpretation: str


class AgeResponse(BaseModel):
    birth_date: date
    today: date
    age_months: int
    supported: bool


class ConversationState(str, Enum):
    GREETING = "greeting"
    COLLECTING_INIT = "collecting_init"
    COLLECTING = "collecting"
    GENERATING_REPORT = "generating_report"
    POST_ANALYSIS = "post_analysis"


REQUIRED_FIELDS = ("birth_date", "gender", "height", "weight")


class CollectedInfo(BaseModel):
    birth_date: Optional[str] = None
    gender: Optional[str] = None
    height: Optional[float] = None
    weight: Optional[float] = None

    def missing_fields(self) -> List[str]:
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def merged(self, extracted: Dict[str, Any]) -> "CollectedInfo":
        """Overlay non-empty extracted values onto what is already known."""
        updates: Dict[str, Any] = {}
        for name in REQUIRED_FIELDS:
            candidate = extracted.get(name)
            if candidate in (None, "", "null"):
                continue
            if name in {"height", "weight"}:
                try:
                    candidate = float(candidate)
                except (TypeError, ValueError):
                    continue
            else:
                candidate = str(candidate).strip()
            updates[name] = candidate
        return self.model_copy(update=updates)


class ChatTurn(BaseModel):
    role: str
    content: str


class ConversationSession(BaseModel):
    state: ConversationState = ConversationState.GREETING
    history: List[ChatTurn] = Field(default_factory=list)
    collected_info: CollectedInfo = Field(default_factory=CollectedInfo)


class SkillUser(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: Optional[str] = None


class SkillUserRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    user: Optional[SkillUser] = None
    utterance: Optional[str] = None
    callback_url: Optional[str] = Field(default=None, alias="callbackUrl")


class SkillRequest(BaseModel):
    """Subset of the Kakao i Open Builder skill payload that the bot reads."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    user_request: Optional[SkillUserRequest] = Field(default=None, alias="userRequest")

    @property
    def user_key(self) -> Optional[str]:
        if self.user_request is None or self.user_request.user is None:
            return None
        return self.user_request.user.id or None

    @property
    def utterance(self) -> Optional[str]:
        if self.user_request is None or self.user_request.utterance is None:
            return None
        return self.user_request.utterance.strip() or None
