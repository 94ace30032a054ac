from __future__ import annotations

import copy
import json
import uuid
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import time
from pathlib import Path
from threading import RLock
from typing import Any
from uuid import UUID

from shapely.geometry import LineString, Polygon
from shapely.geometry.base import BaseGeometry

from .domain import (
    AxelType,
    CalculatePrice,
    CorridorKey,
    PaymentMethod,
    PriceOwner,
    Road,
    StateCalculator,
    Toll,
    TollPaymentType,
    TollPrice,
    TollPriceDayOfWeek,
    TollPriceTimeOfDay,
)
from .engine_errors import EngineDataError, UniqueConstraintError
from .logging_utils import log_event
from .spatial import DEFAULT_SPATIAL_INDEX, SpatialIndex, query_bbox

SNAPSHOT_VERSION = 1


class TollStore:
    """In-process repository for tolls, roads, calculators and prices.

    Enforces the unique constraints the pricing paths rely on (state code, corridor
    triple) and offers all-or-nothing ``transaction()`` blocks.
    """

    def __init__(self, spatial: SpatialIndex | None = None) -> None:
        self.spatial: SpatialIndex = spatial or DEFAULT_SPATIAL_INDEX
        self._lock = RLock()
        self._tx_depth = 0
        self._journal: dict[int, tuple[Any, dict[str, Any]]] | None = None
        self._tolls: dict[UUID, Toll] = {}
        self._roads: dict[UUID, Road] = {}
        self._calculators: dict[UUID, StateCalculator] = {}
        self._calculator_by_code: dict[str, UUID] = {}
        self._calculate_prices: dict[UUID, CalculatePrice] = {}
        self._corridor_index: dict[CorridorKey, UUID] = {}

    # ---- transactions -------------------------------------------------

    def _touch(self, entity: Any) -> Any:
        """Record ``entity`` as it was before the running transaction first handed it out."""
        if self._journal is not None and entity is not None and id(entity) not in self._journal:
            self._journal[id(entity)] = (entity, copy.deepcopy(entity.__dict__))
        return entity

    def _touch_all(self, entities: list[Any]) -> list[Any]:
        if self._journal is not None:
            for entity in entities:
                self._touch(entity)
        return entities

    @contextmanager
    def transaction(self) -> Iterator["TollStore"]:
        """Run a block atomically. Nested blocks join the outermost one.

        Index dicts are copied shallowly; a toll or calculate price is deep-copied
        only when the block first reads it from the store, so a write costs what it
        touches. Entities mutated without going through a store accessor are not
        restored.
        """
        with self._lock:
            if self._tx_depth > 0:
                self._tx_depth += 1
                try:
                    yield self
                finally:
                    self._tx_depth -= 1
                return

            indexes = (
                dict(self._tolls),
                dict(self._calculators),
                dict(self._calculator_by_code),
                dict(self._calculate_prices),
                dict(self._corridor_index),
            )
            self._journal = {}
            self._tx_depth = 1
            try:
                yield self
            except BaseException:
                (
                    self._tolls,
                    self._calculators,
                    self._calculator_by_code,
                    self._calculate_prices,
                    self._corridor_index,
                ) = indexes
                for entity, saved in self._journal.values():
                    entity.__dict__.clear()
                    entity.__dict__.update(saved)
                log_event("store_transaction_rolled_back", restored_count=len(self._journal))
                raise
            finally:
                self._tx_depth = 0
                self._journal = None

    # ---- tolls --------------------------------------------------------

    def add_toll(self, toll: Toll) -> Toll:
        with self._lock:
            if toll.id in self._tolls:
                raise UniqueConstraintError(
                    reason_code="unique_constraint_violation",
                    message="toll id already exists",
                    details={"toll_id": str(toll.id)},
                )
            self._tolls[toll.id] = toll
            return toll

    def get_toll(self, toll_id: UUID) -> Toll | None:
        with self._lock:
            return self._touch(self._tolls.get(toll_id))

    def tolls(self) -> list[Toll]:
        with self._lock:
            return self._touch_all(list(self._tolls.values()))

    def tolls_by_ids(self, toll_ids: Iterable[UUID]) -> dict[UUID, Toll]:
        with self._lock:
            found = {tid: self._tolls[tid] for tid in toll_ids if tid in self._tolls}
            self._touch_all(list(found.values()))
            return found

    def tolls_in_region(self, region: BaseGeometry) -> list[Toll]:
        with self._lock:
            return self._touch_all(
                [
                    toll
                    for toll in self._tolls.values()
                    if toll.location is not None and self.spatial.contains(region, toll.location)
                ]
            )

    def tolls_within_distance(self, geometry: BaseGeometry, degrees: float) -> list[Toll]:
        """Tolls within ``degrees`` of ``geometry``, nearest first."""
        with self._lock:
            hits: list[tuple[float, str, Toll]] = []
            for toll in self._tolls.values():
                location = toll.location
                if location is None:
                    continue
                if not self.spatial.within_distance(geometry, location, degrees):
                    continue
                hits.append((self.spatial.distance(geometry, location), str(toll.id), toll))
            hits.sort(key=lambda item: (item[0], item[1]))
            return self._touch_all([toll for _, _, toll in hits])

    # ---- roads --------------------------------------------------------

    def add_road(self, road: Road) -> Road:
        with self._lock:
            self._roads[road.id] = road
            return road

    def replace_roads(self, removed: Iterable[UUID], added: Iterable[Road]) -> None:
        with self._lock:
            for road_id in removed:
                self._roads.pop(road_id, None)
            for road in added:
                self._roads[road.id] = road

    def roads(self) -> list[Road]:
        with self._lock:
            return list(self._roads.values())

    def roads_in_bbox(self, bbox: Polygon) -> list[Road]:
        with self._lock:
            roads = list(self._roads.values())
        hits = query_bbox([road.geometry for road in roads], bbox)
        return [roads[idx] for idx in hits]

    # ---- state calculators -------------------------------------------

    def add_state_calculator(self, calculator: StateCalculator) -> StateCalculator:
        code = calculator.state_code.strip().upper()
        with self._lock:
            if code in self._calculator_by_code:
                raise UniqueConstraintError(
                    reason_code="unique_constraint_violation",
                    message=f"state calculator for {code} already exists",
                    details={"state_code": code},
                )
            calculator.state_code = code
            self._calculators[calculator.id] = calculator
            self._calculator_by_code[code] = calculator.id
            return calculator

    def find_state_calculator_by_code(self, state_code: str) -> StateCalculator | None:
        with self._lock:
            calculator_id = self._calculator_by_code.get(state_code.strip().upper())
            if calculator_id is None:
                return None
            return self._calculators.get(calculator_id)

    def get_state_calculator(self, calculator_id: UUID) -> StateCalculator | None:
        with self._lock:
            return self._calculators.get(calculator_id)

    def state_calculators(self) -> list[StateCalculator]:
        with self._lock:
            return list(self._calculators.values())

    # ---- calculate prices --------------------------------------------

    def add_calculate_price(self, calculate_price: CalculatePrice) -> CalculatePrice:
        key = CorridorKey(
            calculate_price.state_calculator_id,
            calculate_price.from_id,
            calculate_price.to_id,
        )
        with self._lock:
            if calculate_price.state_calculator_id not in self._calculators:
                raise EngineDataError(
                    reason_code="state_calculator_unavailable",
                    message="state calculator does not exist",
                    details={"state_calculator_id": str(calculate_price.state_calculator_id)},
                )
            if key in self._corridor_index:
                raise UniqueConstraintError(
                    reason_code="unique_constraint_violation",
                    message="calculate price already exists for this corridor",
                    details={"from_id": str(key.from_id), "to_id": str(key.to_id)},
                )
            self._calculate_prices[calculate_price.id] = calculate_price
            self._corridor_index[key] = calculate_price.id
            return calculate_price

    def get_calculate_price(self, calculate_price_id: UUID) -> CalculatePrice | None:
        with self._lock:
            return self._touch(self._calculate_prices.get(calculate_price_id))

    def find_calculate_prices(self, keys: Iterable[CorridorKey]) -> dict[CorridorKey, CalculatePrice]:
        """Bulk lookup of calculate prices by corridor key; missing keys are absent."""
        with self._lock:
            out: dict[CorridorKey, CalculatePrice] = {}
            for key in keys:
                cp_id = self._corridor_index.get(CorridorKey(*key))
                if cp_id is not None:
                    out[CorridorKey(*key)] = self._touch(self._calculate_prices[cp_id])
            return out

    def calculate_prices(self, state_calculator_ids: Iterable[UUID] | None = None) -> list[CalculatePrice]:
        with self._lock:
            if state_calculator_ids is None:
                return self._touch_all(list(self._calculate_prices.values()))
            wanted = set(state_calculator_ids)
            return self._touch_all([cp for cp in self._calculate_prices.values() if cp.state_calculator_id in wanted])

    # ---- maintenance --------------------------------------------------

    def delete_prices_in_bbox(self, bbox: Polygon) -> dict[str, int]:
        """Drop direct prices of tolls in ``bbox`` and every corridor touching one of them."""
        with self.transaction():
            inside = {toll.id for toll in self.tolls_in_region(bbox)}
            toll_prices_deleted = 0
            for toll_id in inside:
                toll = self._tolls[toll_id]
                toll_prices_deleted += len(toll.toll_prices)
                toll.toll_prices = []
            doomed = [
                key
                for key in self._corridor_index
                if key.from_id in inside or key.to_id in inside
            ]
            for key in doomed:
                cp_id = self._corridor_index.pop(key)
                cp = self._calculate_prices.pop(cp_id)
                toll_prices_deleted += len(cp.toll_prices)
        log_event(
            "store_prices_deleted",
            toll_count=len(inside),
            calculate_prices_deleted=len(doomed),
            toll_prices_deleted=toll_prices_deleted,
        )
        return {
            "calculate_prices_deleted": len(doomed),
            "toll_prices_deleted": toll_prices_deleted,
        }

    def counts(self) -> dict[str, int]:
        with self._lock:
            return {
                "tolls": len(self._tolls),
                "roads": len(self._roads),
                "state_calculators": len(self._calculators),
                "calculate_prices": len(self._calculate_prices),
            }

    # ---- snapshot -----------------------------------------------------

    def to_payload(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": SNAPSHOT_VERSION,
                "tolls": [_toll_to_payload(t) for t in self._tolls.values()],
                "roads": [_road_to_payload(r) for r in self._roads.values()],
                "state_calculators": [
                    {"id": str(c.id), "state_code": c.state_code, "name": c.name}
                    for c in self._calculators.values()
                ],
                "calculate_prices": [_calculate_price_to_payload(cp) for cp in self._calculate_prices.values()],
            }

    def save_snapshot(self, path: Path) -> Path:
        payload = self.to_payload()
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2, sort_keys=True), encoding="utf-8")
        tmp.replace(path)
        log_event("store_snapshot_saved", path=str(path), **self.counts())
        return path

    @classmethod
    def from_payload(cls, payload: Any, spatial: SpatialIndex | None = None) -> "TollStore":
        store = cls(spatial=spatial)
        try:
            if not isinstance(payload, dict) or int(payload.get("version", 0)) != SNAPSHOT_VERSION:
                raise EngineDataError(
                    reason_code="store_snapshot_invalid",
                    message="store snapshot is missing or has an unsupported version",
                )
            for item in payload.get("tolls", []):
                store.add_toll(_toll_from_payload(item))
            for item in payload.get("roads", []):
                store.add_road(_road_from_payload(item))
            for item in payload.get("state_calculators", []):
                store.add_state_calculator(
                    StateCalculator(
                        id=UUID(item["id"]),
                        state_code=str(item["state_code"]),
                        name=str(item.get("name") or ""),
                    )
                )
            for item in payload.get("calculate_prices", []):
                store.add_calculate_price(_calculate_price_from_payload(item))
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            if isinstance(exc, EngineDataError):
                raise
            raise EngineDataError(
                reason_code="store_snapshot_invalid",
                message=f"store snapshot is malformed: {exc}",
            ) from exc
        return store

    @classmethod
    def load_snapshot(cls, path: Path, spatial: SpatialIndex | None = None) -> "TollStore":
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise EngineDataError(
                reason_code="store_snapshot_invalid",
                message=f"store snapshot could not be read: {exc}",
                details={"path": str(path)},
            ) from exc
        store = cls.from_payload(payload, spatial=spatial)
        log_event("store_snapshot_loaded", path=str(path), **store.counts())
        return store


def _time_or_none(value: Any) -> time | None:
    if value in (None, ""):
        return None
    return time.fromisoformat(str(value))


def _uuid_or_none(value: Any) -> UUID | None:
    if value in (None, ""):
        return None
    return UUID(str(value))


def _price_to_payload(price: TollPrice) -> dict[str, Any]:
    return {
        "id": str(price.id),
        "amount": price.amount,
        "payment_type": price.payment_type.value,
        "axel_type": price.axel_type.value,
        "day_of_week_from": price.day_of_week_from.value,
        "day_of_week_to": price.day_of_week_to.value,
        "time_of_day": price.time_of_day.value,
        "time_from": price.time_from.isoformat() if price.time_from else None,
        "time_to": price.time_to.isoformat() if price.time_to else None,
        "description": price.description,
    }


def _price_from_payload(item: dict[str, Any], owner: PriceOwner) -> TollPrice:
    return TollPrice(
        id=UUID(item["id"]) if item.get("id") else uuid.uuid4(),
        owner=owner,
        amount=float(item["amount"]),
        payment_type=TollPaymentType(item.get("payment_type", TollPaymentType.UNKNOWN.value)),
        axel_type=AxelType(item.get("axel_type", AxelType.L5.value)),
        day_of_week_from=TollPriceDayOfWeek(item.get("day_of_week_from", "any")),
        day_of_week_to=TollPriceDayOfWeek(item.get("day_of_week_to", "any")),
        time_of_day=TollPriceTimeOfDay(item.get("time_of_day", "any")),
        time_from=_time_or_none(item.get("time_from")),
        time_to=_time_or_none(item.get("time_to")),
        description=item.get("description"),
    )


def _toll_to_payload(toll: Toll) -> dict[str, Any]:
    return {
        "id": str(toll.id),
        "name": toll.name,
        "key": toll.key,
        "number": toll.number,
        "lat": toll.latitude,
        "lon": toll.longitude,
        "road_id": str(toll.road_id) if toll.road_id else None,
        "state_calculator_id": str(toll.state_calculator_id) if toll.state_calculator_id else None,
        "payment_method": {
            "tag": toll.payment_method.tag,
            "no_plate": toll.payment_method.no_plate,
            "cash": toll.payment_method.cash,
            "no_card": toll.payment_method.no_card,
            "app": toll.payment_method.app,
        },
        "ipass": toll.ipass,
        "ipass_overnight": toll.ipass_overnight,
        "pay_online": toll.pay_online,
        "pay_online_overnight": toll.pay_online_overnight,
        "search_radius_m": toll.search_radius_m,
        "website_url": toll.website_url,
        "comment": toll.comment,
        "prices": [_price_to_payload(p) for p in toll.toll_prices],
    }


def _toll_from_payload(item: dict[str, Any]) -> Toll:
    toll_id = UUID(item["id"])
    method = item.get("payment_method") or {}
    toll = Toll(
        id=toll_id,
        name=item.get("name"),
        key=item.get("key"),
        number=item.get("number"),
        latitude=None if item.get("lat") is None else float(item["lat"]),
        longitude=None if item.get("lon") is None else float(item["lon"]),
        road_id=_uuid_or_none(item.get("road_id")),
        state_calculator_id=_uuid_or_none(item.get("state_calculator_id")),
        payment_method=PaymentMethod(
            tag=bool(method.get("tag", False)),
            no_plate=bool(method.get("no_plate", False)),
            cash=bool(method.get("cash", False)),
            no_card=bool(method.get("no_card", False)),
            app=bool(method.get("app", False)),
        ),
        ipass=float(item.get("ipass", 0.0)),
        ipass_overnight=float(item.get("ipass_overnight", 0.0)),
        pay_online=float(item.get("pay_online", 0.0)),
        pay_online_overnight=float(item.get("pay_online_overnight", 0.0)),
        search_radius_m=float(item.get("search_radius_m", 0.0)),
        website_url=item.get("website_url"),
        comment=item.get("comment"),
    )
    owner = PriceOwner.direct(toll_id)
    toll.toll_prices = [_price_from_payload(p, owner) for p in item.get("prices", [])]
    return toll


def _road_to_payload(road: Road) -> dict[str, Any]:
    return {
        "id": str(road.id),
        "name": road.name,
        "ref": road.ref,
        "highway_type": road.highway_type,
        "is_toll": road.is_toll,
        "coordinates": [list(c) for c in road.geometry.coords] if road.geometry is not None else None,
    }


def _road_from_payload(item: dict[str, Any]) -> Road:
    coords = item.get("coordinates")
    return Road(
        id=UUID(item["id"]),
        name=str(item.get("name") or ""),
        ref=item.get("ref"),
        highway_type=str(item.get("highway_type") or ""),
        is_toll=bool(item.get("is_toll", False)),
        geometry=LineString(coords) if coords and len(coords) >= 2 else None,
    )


def _calculate_price_to_payload(cp: CalculatePrice) -> dict[str, Any]:
    return {
        "id": str(cp.id),
        "state_calculator_id": str(cp.state_calculator_id),
        "from_id": str(cp.from_id),
        "to_id": str(cp.to_id),
        "online": cp.online,
        "ipass": cp.ipass,
        "cash": cp.cash,
        "prices": [_price_to_payload(p) for p in cp.toll_prices],
    }


def _calculate_price_from_payload(item: dict[str, Any]) -> CalculatePrice:
    cp = CalculatePrice(
        id=UUID(item["id"]),
        state_calculator_id=UUID(item["state_calculator_id"]),
        from_id=UUID(item["from_id"]),
        to_id=UUID(item["to_id"]),
        online=float(item.get("online", 0.0)),
        ipass=float(item.get("ipass", 0.0)),
        cash=float(item.get("cash", 0.0)),
    )
    owner = PriceOwner.corridor(cp.id)
    cp.toll_prices = [_price_from_payload(p, owner) for p in item.get("prices", [])]
    return cp
