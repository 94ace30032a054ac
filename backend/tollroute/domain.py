from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import time
from enum import Enum
from typing import NamedTuple
from uuid import UUID

from shapely.geometry import LineString, Point

from .engine_errors import EngineDataError


class TollPaymentType(str, Enum):
    UNKNOWN = "unknown"
    IPASS = "ipass"
    PAY_ONLINE = "pay_online"
    CASH = "cash"
    EZPASS = "ezpass"
    OUT_OF_STATE_EZPASS = "out_of_state_ezpass"
    VIDEO_TOLLS = "video_tolls"
    SUNPASS = "sunpass"
    ACCOUNT = "account"
    NON_ACCOUNT = "non_account"


# Payment types that read the transponder scalar when no fine-grained price exists.
TRANSPONDER_PAYMENT_TYPES: frozenset[TollPaymentType] = frozenset(
    {
        TollPaymentType.IPASS,
        TollPaymentType.EZPASS,
        TollPaymentType.OUT_OF_STATE_EZPASS,
        TollPaymentType.SUNPASS,
        TollPaymentType.ACCOUNT,
    }
)


class AxelType(str, Enum):
    UNKNOWN = "unknown"
    L1 = "1L"
    L2 = "2L"
    L3 = "3L"
    L4 = "4L"
    L5 = "5L"
    L6 = "6L"
    L7 = "7L"
    L8 = "8L"
    L9 = "9L"


DEFAULT_AXEL_TYPE = AxelType.L5


def axel_type_for_axles(axles: int) -> AxelType:
    """Most operators bill two axles as class 1, three as class 2, and so on."""
    try:
        return AxelType(f"{int(axles) - 1}L")
    except ValueError:
        return AxelType.UNKNOWN


class TollPriceDayOfWeek(str, Enum):
    ANY = "any"
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


class TollPriceTimeOfDay(str, Enum):
    ANY = "any"
    DAY = "day"
    NIGHT = "night"


@dataclass(frozen=True)
class DayRange:
    day_from: TollPriceDayOfWeek = TollPriceDayOfWeek.ANY
    day_to: TollPriceDayOfWeek = TollPriceDayOfWeek.ANY


ANY_DAY = DayRange()


class PriceKey(NamedTuple):
    payment_type: TollPaymentType
    axel_type: AxelType
    day_of_week_from: TollPriceDayOfWeek
    day_of_week_to: TollPriceDayOfWeek
    time_of_day: TollPriceTimeOfDay


@dataclass(frozen=True)
class PriceOwner:
    """Either a toll (direct, flat price) or a calculate price (corridor price), never both."""

    toll_id: UUID | None = None
    calculate_price_id: UUID | None = None

    def __post_init__(self) -> None:
        if (self.toll_id is None) == (self.calculate_price_id is None):
            raise EngineDataError(
                reason_code="invalid_price_owner",
                message="price owner needs exactly one of toll_id or calculate_price_id",
                details={
                    "toll_id": str(self.toll_id) if self.toll_id else None,
                    "calculate_price_id": str(self.calculate_price_id) if self.calculate_price_id else None,
                },
            )

    @classmethod
    def direct(cls, toll_id: UUID) -> "PriceOwner":
        return cls(toll_id=toll_id)

    @classmethod
    def corridor(cls, calculate_price_id: UUID) -> "PriceOwner":
        return cls(calculate_price_id=calculate_price_id)

    @property
    def is_corridor(self) -> bool:
        return self.calculate_price_id is not None

    @property
    def owner_id(self) -> UUID:
        return self.calculate_price_id if self.calculate_price_id is not None else self.toll_id  # type: ignore[return-value]


@dataclass
class TollPrice:
    owner: PriceOwner
    amount: float
    payment_type: TollPaymentType = TollPaymentType.UNKNOWN
    axel_type: AxelType = DEFAULT_AXEL_TYPE
    day_of_week_from: TollPriceDayOfWeek = TollPriceDayOfWeek.ANY
    day_of_week_to: TollPriceDayOfWeek = TollPriceDayOfWeek.ANY
    time_of_day: TollPriceTimeOfDay = TollPriceTimeOfDay.ANY
    time_from: time | None = None
    time_to: time | None = None
    description: str | None = None
    id: UUID = field(default_factory=uuid.uuid4)

    def key(self) -> PriceKey:
        return PriceKey(
            self.payment_type,
            self.axel_type,
            self.day_of_week_from,
            self.day_of_week_to,
            self.time_of_day,
        )

    @property
    def is_calculated(self) -> bool:
        return self.owner.is_corridor


@dataclass
class PaymentMethod:
    tag: bool = False
    no_plate: bool = False
    cash: bool = False
    no_card: bool = False
    app: bool = False


@dataclass
class Toll:
    id: UUID = field(default_factory=uuid.uuid4)
    name: str | None = None
    key: str | None = None
    number: str | None = None
    latitude: float | None = None
    longitude: float | None = None
    road_id: UUID | None = None
    state_calculator_id: UUID | None = None
    payment_method: PaymentMethod = field(default_factory=PaymentMethod)
    ipass: float = 0.0
    ipass_overnight: float = 0.0
    pay_online: float = 0.0
    pay_online_overnight: float = 0.0
    search_radius_m: float = 0.0
    website_url: str | None = None
    comment: str | None = None
    toll_prices: list[TollPrice] = field(default_factory=list)

    @property
    def location(self) -> Point | None:
        if self.latitude is None or self.longitude is None:
            return None
        return Point(float(self.longitude), float(self.latitude))

    def price_owner(self) -> PriceOwner:
        return PriceOwner.direct(self.id)


@dataclass
class Road:
    id: UUID = field(default_factory=uuid.uuid4)
    name: str = ""
    ref: str | None = None
    highway_type: str = ""
    is_toll: bool = False
    geometry: LineString | None = None


@dataclass
class StateCalculator:
    state_code: str
    name: str
    id: UUID = field(default_factory=uuid.uuid4)


@dataclass
class CalculatePrice:
    state_calculator_id: UUID
    from_id: UUID
    to_id: UUID
    online: float = 0.0
    ipass: float = 0.0
    cash: float = 0.0
    toll_prices: list[TollPrice] = field(default_factory=list)
    id: UUID = field(default_factory=uuid.uuid4)

    def __post_init__(self) -> None:
        if self.from_id == self.to_id:
            raise EngineDataError(
                reason_code="invalid_toll_pair",
                message="calculate price needs two different tolls",
                details={"toll_id": str(self.from_id)},
            )

    def price_owner(self) -> PriceOwner:
        return PriceOwner.corridor(self.id)


class CorridorKey(NamedTuple):
    state_calculator_id: UUID
    from_id: UUID
    to_id: UUID
