from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Literal
from uuid import UUID

from .domain import DEFAULT_AXEL_TYPE, AxelType, CalculatePrice, Toll, TollPaymentType
from .geometry import distance_along_polyline_m, geodesic_length_m, meters_to_degrees, polyline_from_latlon
from .logging_utils import log_event
from .price_ledger import amount_for
from .settings import settings
from .spatial import DEFAULT_SPATIAL_INDEX, SpatialIndex
from .store import TollStore

EntryKind = Literal["flat", "corridor", "unpriced"]


@dataclass(frozen=True)
class TollEncounter:
    toll_id: UUID
    distance: float
    route_section: str | None = None


@dataclass(frozen=True)
class RouteSection:
    # [[lat, lon], ...]
    coordinates: Sequence[Sequence[float]]
    route_section: str | None = None


@dataclass(frozen=True)
class PricedEntry:
    toll_id: UUID
    toll_name: str | None
    kind: EntryKind
    distance: float
    from_toll_id: UUID | None = None
    calculate_price_id: UUID | None = None
    cash: float | None = None
    transponder: float | None = None
    cash_overnight: float | None = None
    transponder_overnight: float | None = None
    route_section: str | None = None

    @property
    def is_priced(self) -> bool:
        return self.kind != "unpriced"


@dataclass
class RoutePricing:
    entries: list[PricedEntry] = field(default_factory=list)
    encounters: list[TollEncounter] = field(default_factory=list)
    unknown_toll_ids: list[UUID] = field(default_factory=list)

    @property
    def total_cash(self) -> float:
        return round(sum(entry.cash or 0.0 for entry in self.entries), 2)

    @property
    def total_transponder(self) -> float:
        return round(sum(entry.transponder or 0.0 for entry in self.entries), 2)

    @property
    def unpriced_count(self) -> int:
        return sum(1 for entry in self.entries if not entry.is_priced)


def _fold(name: str | None) -> str | None:
    return name.casefold() if name is not None else None


def _corridor_index(
    calculate_prices: Iterable[CalculatePrice],
    tolls_by_id: Mapping[UUID, Toll],
) -> dict[tuple[UUID, str, str], CalculatePrice]:
    """(calculator, from name, to name) -> first calculate price with that pairing."""
    index: dict[tuple[UUID, str, str], CalculatePrice] = {}
    for cp in calculate_prices:
        from_toll = tolls_by_id.get(cp.from_id)
        to_toll = tolls_by_id.get(cp.to_id)
        if from_toll is None or to_toll is None or from_toll.name is None or to_toll.name is None:
            continue
        index.setdefault((cp.state_calculator_id, from_toll.name.casefold(), to_toll.name.casefold()), cp)
    return index


def _with_fallback(amount: float, legacy: float) -> float:
    return legacy if amount == 0.0 else amount


def resolve_route_prices(
    encounters: Iterable[TollEncounter],
    tolls_by_id: Mapping[UUID, Toll],
    calculate_prices: Iterable[CalculatePrice],
    *,
    axel_type: AxelType = DEFAULT_AXEL_TYPE,
) -> list[PricedEntry]:
    """Turn the tolls met along a route into a deduplicated list of charges.

    Tolls without a state calculator are charged their own flat rate. A toll under
    a calculator opens a corridor that ends at the farthest later toll of the same
    calculator with a known price; both names are then spent so neither is charged
    again. When no later toll has a price the farthest one is emitted unpriced.
    Encounters whose toll id is not in ``tolls_by_id`` are ignored.
    """
    ordered = sorted(
        (enc for enc in encounters if enc.toll_id in tolls_by_id),
        key=lambda enc: enc.distance,
    )
    prices = _corridor_index(calculate_prices, tolls_by_id)

    entries: list[PricedEntry] = []
    used_names: set[str] = set()
    last_distance = 0.0

    for enc in ordered:
        toll = tolls_by_id[enc.toll_id]
        name = _fold(toll.name)
        if name is not None and name in used_names:
            continue
        if enc.distance < last_distance:
            continue

        if toll.state_calculator_id is None:
            entries.append(
                PricedEntry(
                    toll_id=toll.id,
                    toll_name=toll.name,
                    kind="flat",
                    distance=enc.distance,
                    cash=amount_for(toll, TollPaymentType.CASH, axel_type),
                    transponder=amount_for(toll, TollPaymentType.IPASS, axel_type),
                    cash_overnight=toll.pay_online_overnight,
                    transponder_overnight=toll.ipass_overnight,
                    route_section=enc.route_section,
                )
            )
            continue

        calculator_id = toll.state_calculator_id
        candidates: list[tuple[TollEncounter, Toll]] = []
        for later in ordered:
            if later.distance <= enc.distance:
                continue
            other = tolls_by_id[later.toll_id]
            other_name = _fold(other.name)
            if other.state_calculator_id != calculator_id or other_name is None:
                continue
            if other_name in used_names or other_name == name:
                continue
            candidates.append((later, other))
        if not candidates:
            continue

        # Farthest first; stable sort keeps the earliest encounter among equal distances.
        candidates.sort(key=lambda item: item[0].distance, reverse=True)
        chosen: tuple[TollEncounter, Toll, CalculatePrice] | None = None
        if name is not None:
            for later, other in candidates:
                cp = prices.get((calculator_id, name, other.name.casefold()))  # type: ignore[union-attr]
                if cp is not None:
                    chosen = (later, other, cp)
                    break

        if chosen is not None:
            later, other, cp = chosen
            entries.append(
                PricedEntry(
                    toll_id=other.id,
                    toll_name=other.name,
                    kind="corridor",
                    distance=later.distance,
                    from_toll_id=toll.id,
                    calculate_price_id=cp.id,
                    cash=_with_fallback(amount_for(cp, TollPaymentType.CASH, axel_type), cp.cash),
                    transponder=_with_fallback(amount_for(cp, TollPaymentType.EZPASS, axel_type), cp.ipass),
                    route_section=later.route_section,
                )
            )
        else:
            later, other = candidates[0]
            entries.append(
                PricedEntry(
                    toll_id=other.id,
                    toll_name=other.name,
                    kind="unpriced",
                    distance=later.distance,
                    from_toll_id=toll.id,
                    route_section=later.route_section,
                )
            )

        if name is not None:
            used_names.add(name)
        used_names.add(other.name.casefold())  # type: ignore[union-attr]
        last_distance = later.distance

    return entries


def locate_toll_encounters(
    sections: Sequence[RouteSection],
    tolls: Iterable[Toll],
    distance_m: float | None = None,
    *,
    spatial: SpatialIndex | None = None,
) -> list[TollEncounter]:
    """Tolls within ``distance_m`` of each section, with their distance from the route start.

    Section lengths accumulate so distances keep increasing from one section to the
    next. A toll close to two sections is reported once, for the first.
    """
    spatial = spatial or DEFAULT_SPATIAL_INDEX
    distance = settings.toll_polyline_distance_m if distance_m is None else float(distance_m)
    degrees = meters_to_degrees(distance)
    candidates = [toll for toll in tolls if toll.location is not None]

    encounters: list[TollEncounter] = []
    seen: set[UUID] = set()
    offset_m = 0.0
    for section in sections:
        line = polyline_from_latlon(section.coordinates)
        if line is None:
            continue
        for toll in candidates:
            if toll.id in seen:
                continue
            location = toll.location
            if not spatial.within_distance(line, location, degrees):  # type: ignore[arg-type]
                continue
            seen.add(toll.id)
            encounters.append(
                TollEncounter(
                    toll_id=toll.id,
                    distance=round(offset_m + distance_along_polyline_m(line, location), 3),  # type: ignore[arg-type]
                    route_section=section.route_section,
                )
            )
        offset_m += geodesic_length_m(line)
    encounters.sort(key=lambda enc: (enc.distance, str(enc.toll_id)))
    return encounters


def price_encounters(
    store: TollStore,
    encounters: Sequence[TollEncounter],
    *,
    axel_type: AxelType = DEFAULT_AXEL_TYPE,
) -> RoutePricing:
    """Resolve encounters against the tolls and corridor prices held in ``store``."""
    tolls_by_id = store.tolls_by_ids(enc.toll_id for enc in encounters)
    unknown = sorted({enc.toll_id for enc in encounters if enc.toll_id not in tolls_by_id}, key=str)
    calculator_ids = {toll.state_calculator_id for toll in tolls_by_id.values() if toll.state_calculator_id}
    calculate_prices = store.calculate_prices(calculator_ids)
    # Corridor endpoints may be other toll records sharing a name with an encounter.
    endpoint_ids = {cp.from_id for cp in calculate_prices} | {cp.to_id for cp in calculate_prices}
    lookup = {**store.tolls_by_ids(endpoint_ids), **tolls_by_id}

    entries = resolve_route_prices(
        [enc for enc in encounters if enc.toll_id in tolls_by_id],
        lookup,
        calculate_prices,
        axel_type=axel_type,
    )
    result = RoutePricing(entries=entries, encounters=list(encounters), unknown_toll_ids=unknown)
    log_event(
        "route_prices_resolved",
        encounter_count=len(encounters),
        entry_count=len(entries),
        unpriced_count=result.unpriced_count,
        unknown_toll_count=len(unknown),
        total_cash=result.total_cash,
        total_transponder=result.total_transponder,
    )
    return result


def price_route_sections(
    store: TollStore,
    sections: Sequence[RouteSection],
    *,
    distance_m: float | None = None,
    axel_type: AxelType = DEFAULT_AXEL_TYPE,
) -> RoutePricing:
    encounters = locate_toll_encounters(sections, store.tolls(), distance_m, spatial=store.spatial)
    return price_encounters(store, encounters, axel_type=axel_type)
