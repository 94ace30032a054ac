from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import time
from uuid import UUID

from .domain import (
    ANY_DAY,
    DEFAULT_AXEL_TYPE,
    TRANSPONDER_PAYMENT_TYPES,
    AxelType,
    CalculatePrice,
    CorridorKey,
    DayRange,
    PriceKey,
    PriceOwner,
    StateCalculator,
    Toll,
    TollPaymentType,
    TollPrice,
    TollPriceTimeOfDay,
)
from .engine_errors import (
    EngineDataError,
    FailureDescriptor,
    UniqueConstraintError,
    failure_from_error,
)
from .logging_utils import log_event, log_warning
from .models import PriceFact
from .settings import settings
from .store import TollStore

PricedEntity = Toll | CalculatePrice
PriceOwnerRef = PriceOwner | CorridorKey


def price_key(
    payment_type: TollPaymentType,
    axel_type: AxelType = DEFAULT_AXEL_TYPE,
    day_range: DayRange | None = None,
    time_of_day: TollPriceTimeOfDay = TollPriceTimeOfDay.ANY,
) -> PriceKey:
    days = day_range or ANY_DAY
    return PriceKey(payment_type, axel_type, days.day_from, days.day_to, time_of_day)


def find_price(entity: PricedEntity, key: PriceKey) -> TollPrice | None:
    for price in entity.toll_prices:
        if price.key() == key:
            return price
    return None


def set_price(
    entity: PricedEntity,
    amount: float,
    payment_type: TollPaymentType,
    axel_type: AxelType = DEFAULT_AXEL_TYPE,
    day_range: DayRange | None = None,
    time_of_day: TollPriceTimeOfDay = TollPriceTimeOfDay.ANY,
    *,
    time_window: tuple[time, time] | None = None,
    description: str | None = None,
) -> TollPrice:
    """Overwrite the price stored under the full key, or attach a new one."""
    key = price_key(payment_type, axel_type, day_range, time_of_day)
    existing = find_price(entity, key)
    if existing is not None:
        existing.amount = float(amount)
        if time_window is not None:
            existing.time_from, existing.time_to = time_window
        if description is not None:
            existing.description = description
        return existing

    price = TollPrice(
        owner=entity.price_owner(),
        amount=float(amount),
        payment_type=key.payment_type,
        axel_type=key.axel_type,
        day_of_week_from=key.day_of_week_from,
        day_of_week_to=key.day_of_week_to,
        time_of_day=key.time_of_day,
        time_from=time_window[0] if time_window else None,
        time_to=time_window[1] if time_window else None,
        description=description,
    )
    entity.toll_prices.append(price)
    return price


def _legacy_amount(entity: PricedEntity, payment_type: TollPaymentType) -> float:
    transponder = payment_type in TRANSPONDER_PAYMENT_TYPES
    if isinstance(entity, CalculatePrice):
        return entity.ipass if transponder else entity.cash
    return entity.ipass if transponder else entity.pay_online


def amount_for(
    entity: PricedEntity,
    payment_type: TollPaymentType,
    axel_type: AxelType = DEFAULT_AXEL_TYPE,
    day_range: DayRange | None = None,
    time_of_day: TollPriceTimeOfDay = TollPriceTimeOfDay.ANY,
) -> float:
    """Fine-grained amount under the full key, else the legacy scalar for that payment type."""
    price = find_price(entity, price_key(payment_type, axel_type, day_range, time_of_day))
    if price is not None:
        return price.amount
    return _legacy_amount(entity, payment_type)


def _fact_day_range(fact: PriceFact) -> DayRange | None:
    if fact.day_range is None:
        return None
    return DayRange(day_from=fact.day_range[0], day_to=fact.day_range[1])


def apply_fact(entity: PricedEntity, fact: PriceFact) -> TollPrice:
    return set_price(
        entity,
        fact.amount,
        fact.payment_type,
        fact.axle_class,
        _fact_day_range(fact),
        fact.time_of_day,
        time_window=fact.time_window,
        description=fact.description,
    )


def _validate_amount(fact: PriceFact) -> None:
    if fact.amount < 0:
        raise EngineDataError(
            reason_code="invalid_amount",
            message="price amount cannot be negative",
            details={"amount": fact.amount, "facility": fact.facility_match_key},
        )


def resolve_owner(store: TollStore, owner: PriceOwner) -> PricedEntity:
    if owner.toll_id is not None:
        toll = store.get_toll(owner.toll_id)
        if toll is None:
            raise EngineDataError(
                reason_code="toll_not_found",
                message="toll does not exist",
                details={"toll_id": str(owner.toll_id)},
            )
        return toll
    cp = store.get_calculate_price(owner.calculate_price_id)  # type: ignore[arg-type]
    if cp is None:
        raise EngineDataError(
            reason_code="missing_price",
            message="calculate price does not exist",
            details={"calculate_price_id": str(owner.calculate_price_id)},
        )
    return cp


def upsert_price(store: TollStore, owner: PriceOwner, fact: PriceFact) -> TollPrice:
    _validate_amount(fact)
    with store.transaction():
        entity = resolve_owner(store, owner)
        price = apply_fact(entity, fact)
    log_event(
        "price_upserted",
        owner_id=str(owner.owner_id),
        corridor=owner.is_corridor,
        payment_type=fact.payment_type.value,
        axel_type=fact.axle_class.value,
        amount=fact.amount,
    )
    return price


def get_or_create_state_calculator(store: TollStore, state_code: str, name: str) -> StateCalculator:
    """Find the calculator for ``state_code`` or create it; a lost insert race re-reads the winner."""
    attempts = max(1, int(settings.state_calculator_conflict_retries))
    for attempt in range(1, attempts + 1):
        existing = store.find_state_calculator_by_code(state_code)
        if existing is not None:
            return existing
        try:
            created = store.add_state_calculator(StateCalculator(state_code=state_code, name=name))
        except UniqueConstraintError:
            log_warning("state_calculator_insert_conflict", state_code=state_code, attempt=attempt)
            winner = store.find_state_calculator_by_code(state_code)
            if winner is not None:
                return winner
            continue
        log_event("state_calculator_created", state_code=created.state_code, state_calculator_id=str(created.id))
        return created
    raise EngineDataError(
        reason_code="state_calculator_unavailable",
        message=f"could not find or create state calculator for {state_code}",
        details={"state_code": state_code, "attempts": attempts},
    )


def get_or_create_calculate_prices(
    store: TollStore,
    keys: Iterable[CorridorKey],
) -> dict[CorridorKey, CalculatePrice]:
    """Fetch every corridor in one lookup and create the missing ones."""
    wanted: list[CorridorKey] = []
    seen: set[CorridorKey] = set()
    for key in keys:
        key = CorridorKey(*key)
        if key in seen:
            continue
        seen.add(key)
        wanted.append(key)

    found = store.find_calculate_prices(wanted)
    for key in wanted:
        if key in found:
            continue
        found[key] = store.add_calculate_price(
            CalculatePrice(
                state_calculator_id=key.state_calculator_id,
                from_id=key.from_id,
                to_id=key.to_id,
            )
        )
    return found


def get_or_create_calculate_price(
    store: TollStore,
    state_calculator_id: UUID,
    from_id: UUID,
    to_id: UUID,
) -> CalculatePrice:
    key = CorridorKey(state_calculator_id, from_id, to_id)
    return get_or_create_calculate_prices(store, [key])[key]


@dataclass
class BatchUpsertResult:
    applied: int = 0
    skipped: int = 0
    failures: list[FailureDescriptor] = field(default_factory=list)
    conflicts: list[FailureDescriptor] = field(default_factory=list)


def owner_label(owner: PriceOwnerRef) -> str:
    if isinstance(owner, PriceOwner):
        return str(owner.owner_id)
    return f"{owner.state_calculator_id}:{owner.from_id}->{owner.to_id}"


def _validate_corridor(store: TollStore, key: CorridorKey) -> None:
    if key.from_id == key.to_id:
        raise EngineDataError(
            reason_code="invalid_toll_pair",
            message="corridor needs two different tolls",
            details={"toll_id": str(key.from_id)},
        )
    for toll_id in (key.from_id, key.to_id):
        if store.get_toll(toll_id) is None:
            raise EngineDataError(
                reason_code="toll_not_found",
                message="corridor toll does not exist",
                details={"toll_id": str(toll_id)},
            )
    if store.get_state_calculator(key.state_calculator_id) is None:
        raise EngineDataError(
            reason_code="state_calculator_unavailable",
            message="state calculator does not exist",
            details={"state_calculator_id": str(key.state_calculator_id)},
        )


def batch_upsert_prices(
    store: TollStore,
    owner_facts: Mapping[PriceOwnerRef, Sequence[PriceFact]],
) -> BatchUpsertResult:
    """Apply many price facts in one transaction.

    Corridor owners may be given as ``CorridorKey``; their calculate prices are
    fetched or created together. Facts with a non-positive amount are skipped.
    Owners that fail validation are reported in ``failures`` and the rest of the
    batch still applies; any other exception rolls the whole batch back.
    """
    result = BatchUpsertResult()
    with store.transaction():
        valid: list[tuple[PriceOwnerRef, list[PriceFact]]] = []
        corridor_keys: list[CorridorKey] = []
        for owner, facts in owner_facts.items():
            usable = [fact for fact in facts if fact.amount > 0]
            result.skipped += len(facts) - len(usable)
            if not usable:
                continue
            try:
                if isinstance(owner, PriceOwner):
                    resolve_owner(store, owner)
                else:
                    _validate_corridor(store, owner)
                    corridor_keys.append(owner)
            except EngineDataError as exc:
                result.failures.append(failure_from_error(owner_label(owner), exc))
                continue
            valid.append((owner, usable))

        corridors = get_or_create_calculate_prices(store, corridor_keys)

        for owner, facts in valid:
            entity = (
                resolve_owner(store, owner)
                if isinstance(owner, PriceOwner)
                else corridors[CorridorKey(*owner)]
            )
            written: dict[PriceKey, float] = {}
            for fact in facts:
                key = price_key(fact.payment_type, fact.axle_class, _fact_day_range(fact), fact.time_of_day)
                previous = written.get(key)
                if previous is not None and previous != fact.amount:
                    result.conflicts.append(
                        FailureDescriptor(
                            key=f"{owner_label(owner)}:{key.payment_type.value}:{key.axel_type.value}",
                            reason_code="conflicting_upsert",
                            message=f"amount {previous:g} replaced by {fact.amount:g} within one batch",
                        )
                    )
                apply_fact(entity, fact)
                written[key] = fact.amount
                result.applied += 1

    log_event(
        "prices_batch_upserted",
        owner_count=len(owner_facts),
        applied=result.applied,
        skipped=result.skipped,
        failure_count=len(result.failures),
        conflict_count=len(result.conflicts),
    )
    return result
