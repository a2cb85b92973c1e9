"""Schemas for competitions and the ad-hoc leaderboard."""
from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from affiliate_engine.models.competition import CompetitionMetric
from affiliate_engine.schemas.base import BaseResponseSchema, BaseCreateSchema


class LeaderboardMetric(str, Enum):
    CLICKS = "clicks"
    CONVERSIONS = "conversions"
    REVENUE = "revenue"
    CONVERSION_RATE = "conversion_rate"


class LeaderboardPeriod(str, Enum):
    LAST_7_DAYS = "7d"
    LAST_30_DAYS = "30d"
    LAST_90_DAYS = "90d"
    YEAR_TO_DATE = "ytd"
    ALL_TIME = "all"


def _require_tz(v: Optional[datetime]) -> Optional[datetime]:
    if v is not None and v.tzinfo is None:
        raise ValueError("datetime must include a timezone")
    return v


class CompetitionCreate(BaseCreateSchema):
    name: str = Field(..., min_length=2, max_length=200)
    description: Optional[str] = None
    metric: CompetitionMetric
    start_date: datetime
    end_date: datetime
    prize_description: Optional[str] = None
    prize_value_cents: Optional[int] = Field(None, ge=0)
    auto_enroll_all: bool = True

    @field_validator("start_date", "end_date")
    @classmethod
    def require_timezone(cls, v: datetime) -> datetime:
        return _require_tz(v)

    @model_validator(mode="after")
    def check_window(self):
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class CompetitionUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=2, max_length=200)
    description: Optional[str] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    prize_description: Optional[str] = None
    prize_value_cents: Optional[int] = Field(None, ge=0)

    @field_validator("start_date", "end_date")
    @classmethod
    def require_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _require_tz(v)


class CompetitionResponse(BaseResponseSchema):
    id: UUID
    clinic_id: UUID
    name: str
    description: Optional[str] = None
    metric: str
    start_date: datetime
    end_date: datetime
    status: str
    prize_description: Optional[str] = None
    prize_value_cents: Optional[int] = None
    auto_enroll_all: bool
    created_at: datetime


class CompetitionListResponse(BaseModel):
    items: List[CompetitionResponse]
    total: int


class CompetitionStanding(BaseModel):
    rank: Optional[int] = None
    affiliate_id: UUID
    display_name: str
    current_value: int
    formatted_value: str


class CompetitionStandingsResponse(BaseModel):
    competition: CompetitionResponse
    standings: List[CompetitionStanding]


class EnrollRequest(BaseModel):
    affiliate_id: UUID


class LeaderboardEntry(BaseModel):
    rank: int
    affiliate_id: UUID
    display_name: str
    value: float
    formatted_value: str
    percent_of_total: float


class LeaderboardResponse(BaseModel):
    metric: LeaderboardMetric
    period: LeaderboardPeriod
    total: float
    entries: List[LeaderboardEntry]
