from __future__ import annotations

from datetime import time
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, Field, field_validator, model_validator

from .domain import (
    DEFAULT_AXEL_TYPE,
    AxelType,
    TollPaymentType,
    TollPriceDayOfWeek,
    TollPriceTimeOfDay,
)


class LatLng(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)


class BoundingBox(BaseModel):
    min_lat: float = Field(..., ge=-90, le=90)
    min_lon: float = Field(..., ge=-180, le=180)
    max_lat: float = Field(..., ge=-90, le=90)
    max_lon: float = Field(..., ge=-180, le=180)


class PriceFact(BaseModel):
    """One normalised price observation as produced by a per-state scraper."""

    facility_match_key: str
    exit_match_key: str | None = None
    amount: float
    payment_type: TollPaymentType = TollPaymentType.CASH
    axle_class: AxelType = DEFAULT_AXEL_TYPE
    day_range: tuple[TollPriceDayOfWeek, TollPriceDayOfWeek] | None = None
    time_of_day: TollPriceTimeOfDay = TollPriceTimeOfDay.ANY
    time_window: tuple[time, time] | None = None
    description: str | None = None

    @field_validator("facility_match_key")
    @classmethod
    def non_blank_key(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("facility_match_key cannot be blank")
        return v

    @field_validator("amount")
    @classmethod
    def finite(cls, v: float) -> float:
        if v != v or v in (float("inf"), float("-inf")):
            raise ValueError("amount must be finite")
        return v


class TollPriceOut(BaseModel):
    id: UUID
    amount: float
    payment_type: TollPaymentType
    axel_type: AxelType
    day_of_week_from: TollPriceDayOfWeek
    day_of_week_to: TollPriceDayOfWeek
    time_of_day: TollPriceTimeOfDay
    time_from: time | None = None
    time_to: time | None = None
    description: str | None = None
    is_calculated: bool = False


class TollOut(BaseModel):
    id: UUID
    name: str | None = None
    key: str | None = None
    number: str | None = None
    lat: float | None = None
    lon: float | None = None
    state_calculator_id: UUID | None = None
    ipass: float = 0.0
    ipass_overnight: float = 0.0
    pay_online: float = 0.0
    pay_online_overnight: float = 0.0
    search_radius_m: float = 0.0
    prices: list[TollPriceOut] = Field(default_factory=list)


class RoadIn(BaseModel):
    id: UUID | None = None
    name: str = ""
    ref: str | None = None
    highway_type: str = ""
    is_toll: bool = False
    # [[lon, lat], ...] as in GeoJSON.
    coordinates: list[list[float]] | None = None


class RoadOut(BaseModel):
    id: UUID
    name: str = ""
    ref: str | None = None
    highway_type: str = ""
    is_toll: bool = False
    coordinates: list[list[float]] | None = None


class RoadMergeRequest(BaseModel):
    roads: list[RoadIn] | None = None
    bbox: BoundingBox | None = None
    tolerance_m: float | None = Field(default=None, gt=0.0, le=500.0)

    @model_validator(mode="after")
    def roads_or_bbox(self) -> "RoadMergeRequest":
        if self.roads is None and self.bbox is None:
            raise ValueError("either roads or bbox is required")
        return self


class RoadMergeResponse(BaseModel):
    input_count: int
    roads: list[RoadOut]


class IntersectingRoadsRequest(BaseModel):
    coordinates: list[list[float]] = Field(..., description="[[lon, lat], ...]")
    bbox: BoundingBox | None = None
    expand: bool = True


class RoadListResponse(BaseModel):
    roads: list[RoadOut]


class TollEncounterIn(BaseModel):
    toll_id: UUID
    distance: float = Field(..., ge=0.0)
    route_section: str | None = None


class RoutePricesRequest(BaseModel):
    encounters: list[TollEncounterIn]
    axel_type: AxelType = DEFAULT_AXEL_TYPE


class RouteSectionIn(BaseModel):
    # [[lat, lon], ...]
    coordinates: list[list[float]]
    route_section: str | None = None


class RouteTollsRequest(BaseModel):
    sections: list[RouteSectionIn] = Field(..., min_length=1)
    distance_m: float | None = Field(default=None, gt=0.0, le=5_000.0)
    axel_type: AxelType = DEFAULT_AXEL_TYPE


EntryKind = Literal["flat", "corridor", "unpriced"]


class PricedEntryOut(BaseModel):
    toll_id: UUID
    toll_name: str | None = None
    kind: EntryKind
    distance: float
    from_toll_id: UUID | None = None
    calculate_price_id: UUID | None = None
    cash: float | None = None
    transponder: float | None = None
    cash_overnight: float | None = None
    transponder_overnight: float | None = None
    route_section: str | None = None


class RoutePricesResponse(BaseModel):
    entries: list[PricedEntryOut]
    total_cash: float = 0.0
    total_transponder: float = 0.0
    unpriced_count: int = 0
    unknown_toll_ids: list[UUID] = Field(default_factory=list)


SearchField = Literal["name", "key", "number"]


class TollMatchRequest(BaseModel):
    names: list[str] = Field(..., min_length=1)
    bbox: BoundingBox
    fields: list[SearchField] = Field(default_factory=lambda: ["name", "key"])
    min_confidence: float | None = Field(default=None, ge=0.0, le=1.0)


class TollMatchOut(BaseModel):
    toll: TollOut
    confidence: float


class TollMatchResponse(BaseModel):
    matches: dict[str, list[TollMatchOut]]
    not_found: list[str]


class ClosestTollsRequest(BaseModel):
    lat: float = Field(..., ge=-90, le=90)
    lon: float = Field(..., ge=-180, le=180)
    radii_m: list[float] | None = None
    max_count: int | None = Field(default=None, ge=1, le=100)

    @field_validator("radii_m")
    @classmethod
    def positive_radii(cls, v: list[float] | None) -> list[float] | None:
        if v is None:
            return v
        if not v or any(r <= 0 for r in v):
            raise ValueError("radii_m must be positive")
        return v


class TollListResponse(BaseModel):
    tolls: list[TollOut]


class CorridorKeyIn(BaseModel):
    state_calculator_id: UUID
    from_id: UUID
    to_id: UUID


class PriceUpsertRequest(BaseModel):
    toll_id: UUID | None = None
    calculate_price_id: UUID | None = None
    fact: PriceFact


class PriceUpsertResponse(BaseModel):
    price: TollPriceOut


class PriceBatchItem(BaseModel):
    toll_id: UUID | None = None
    corridor: CorridorKeyIn | None = None
    facts: list[PriceFact] = Field(default_factory=list)

    @model_validator(mode="after")
    def one_owner(self) -> "PriceBatchItem":
        if (self.toll_id is None) == (self.corridor is None):
            raise ValueError("exactly one of toll_id or corridor is required")
        return self


class PriceBatchRequest(BaseModel):
    items: list[PriceBatchItem] = Field(..., min_length=1)


class FailureOut(BaseModel):
    key: str
    reason_code: str
    message: str


class PriceBatchResponse(BaseModel):
    applied: int
    skipped: int
    failures: list[FailureOut]
    conflicts: list[FailureOut]


class SearchRadiiRequest(BaseModel):
    bbox: BoundingBox | None = None
    default_radius_m: float | None = Field(default=None, gt=0.0, le=50_000.0)


class SearchRadiiResponse(BaseModel):
    toll_count: int
    shrunk_count: int


class HealthResponse(BaseModel):
    status: Literal["ok"] = "ok"
    toll_count: int
    road_count: int
    calculate_price_count: int
