from __future__ import annotations

import uuid

import pytest

import tollroute.price_ledger as price_ledger
from tollroute.domain import (
    AxelType,
    CalculatePrice,
    CorridorKey,
    DayRange,
    PriceOwner,
    StateCalculator,
    Toll,
    TollPaymentType,
    TollPriceDayOfWeek,
    TollPriceTimeOfDay,
)
from tollroute.engine_errors import EngineDataError
from tollroute.models import PriceFact
from tollroute.price_ledger import (
    amount_for,
    batch_upsert_prices,
    get_or_create_calculate_price,
    get_or_create_state_calculator,
    set_price,
    upsert_price,
)
from tollroute.store import TollStore


def _store_with_tolls(*names: str) -> tuple[TollStore, list[Toll]]:
    store = TollStore()
    tolls = [store.add_toll(Toll(name=name, latitude=27.0 + i * 0.01, longitude=-81.0)) for i, name in enumerate(names)]
    return store, tolls


def _fact(amount: float, payment_type: TollPaymentType = TollPaymentType.CASH, **kwargs) -> PriceFact:
    return PriceFact(facility_match_key="unit", amount=amount, payment_type=payment_type, **kwargs)


def test_set_price_is_idempotent_per_full_key() -> None:
    toll = Toll(name="Plaza")
    first = set_price(toll, 1.25, TollPaymentType.CASH)
    again = set_price(toll, 1.25, TollPaymentType.CASH)
    assert first is again
    assert len(toll.toll_prices) == 1

    set_price(toll, 1.50, TollPaymentType.CASH)
    assert len(toll.toll_prices) == 1
    assert toll.toll_prices[0].amount == 1.50


def test_distinct_keys_create_distinct_prices() -> None:
    toll = Toll(name="Plaza")
    set_price(toll, 1.0, TollPaymentType.CASH)
    set_price(toll, 2.0, TollPaymentType.CASH, AxelType.L2)
    set_price(toll, 3.0, TollPaymentType.CASH, day_range=DayRange(TollPriceDayOfWeek.SATURDAY, TollPriceDayOfWeek.SUNDAY))
    set_price(toll, 4.0, TollPaymentType.CASH, time_of_day=TollPriceTimeOfDay.NIGHT)
    assert len(toll.toll_prices) == 4
    assert len({p.key() for p in toll.toll_prices}) == 4
    assert all(p.owner == PriceOwner.direct(toll.id) for p in toll.toll_prices)


def test_amount_for_falls_back_to_legacy_scalars() -> None:
    cp = CalculatePrice(state_calculator_id=uuid.uuid4(), from_id=uuid.uuid4(), to_id=uuid.uuid4(), cash=2.5, ipass=1.9)
    assert amount_for(cp, TollPaymentType.CASH) == 2.5
    assert amount_for(cp, TollPaymentType.VIDEO_TOLLS) == 2.5
    assert amount_for(cp, TollPaymentType.EZPASS) == 1.9
    assert amount_for(cp, TollPaymentType.SUNPASS) == 1.9

    set_price(cp, 3.1, TollPaymentType.CASH)
    assert amount_for(cp, TollPaymentType.CASH) == 3.1
    # A different axle class has no fine-grained price yet.
    assert amount_for(cp, TollPaymentType.CASH, AxelType.L2) == 2.5

    toll = Toll(name="Flat", pay_online=0.75, ipass=0.5)
    assert amount_for(toll, TollPaymentType.CASH) == 0.75
    assert amount_for(toll, TollPaymentType.IPASS) == 0.5


def test_price_owner_is_exactly_one_of_toll_or_corridor() -> None:
    with pytest.raises(EngineDataError) as both:
        PriceOwner(toll_id=uuid.uuid4(), calculate_price_id=uuid.uuid4())
    assert both.value.reason_code == "invalid_price_owner"
    with pytest.raises(EngineDataError):
        PriceOwner()


def test_calculate_price_rejects_same_entry_and_exit() -> None:
    toll_id = uuid.uuid4()
    with pytest.raises(EngineDataError) as exc:
        CalculatePrice(state_calculator_id=uuid.uuid4(), from_id=toll_id, to_id=toll_id)
    assert exc.value.reason_code == "invalid_toll_pair"


def test_upsert_price_through_store() -> None:
    store, (toll,) = _store_with_tolls("Plaza")
    price = upsert_price(store, PriceOwner.direct(toll.id), _fact(1.75, description="cash lane"))
    upsert_price(store, PriceOwner.direct(toll.id), _fact(2.0))

    assert len(toll.toll_prices) == 1
    assert toll.toll_prices[0].amount == 2.0
    assert price.description == "cash lane"

    with pytest.raises(EngineDataError) as missing:
        upsert_price(store, PriceOwner.direct(uuid.uuid4()), _fact(1.0))
    assert missing.value.reason_code == "toll_not_found"

    with pytest.raises(EngineDataError) as negative:
        upsert_price(store, PriceOwner.direct(toll.id), _fact(-1.0))
    assert negative.value.reason_code == "invalid_amount"


def test_get_or_create_calculate_price_reuses_the_corridor() -> None:
    store, (a, b) = _store_with_tolls("A", "B")
    calculator = get_or_create_state_calculator(store, "fl", "Florida")
    first = get_or_create_calculate_price(store, calculator.id, a.id, b.id)
    second = get_or_create_calculate_price(store, calculator.id, a.id, b.id)
    reverse = get_or_create_calculate_price(store, calculator.id, b.id, a.id)

    assert first is second
    assert reverse.id != first.id
    assert len(store.calculate_prices()) == 2


def test_batch_upsert_creates_corridors_and_skips_non_positive_amounts() -> None:
    store, (a, b, c) = _store_with_tolls("A", "B", "C")
    calculator = get_or_create_state_calculator(store, "FL", "Florida")
    ab = CorridorKey(calculator.id, a.id, b.id)
    ac = CorridorKey(calculator.id, a.id, c.id)

    result = batch_upsert_prices(
        store,
        {
            ab: [_fact(2.5), _fact(1.9, TollPaymentType.EZPASS), _fact(0.0, TollPaymentType.VIDEO_TOLLS)],
            ac: [_fact(-1.0)],
            PriceOwner.direct(c.id): [_fact(0.5)],
        },
    )

    assert result.applied == 3
    assert result.skipped == 2
    assert result.failures == []
    corridors = store.find_calculate_prices([ab, ac])
    assert list(corridors) == [ab]
    assert amount_for(corridors[ab], TollPaymentType.CASH) == 2.5
    assert amount_for(corridors[ab], TollPaymentType.EZPASS) == 1.9
    assert amount_for(c, TollPaymentType.CASH) == 0.5


def test_batch_upsert_collects_failures_without_aborting() -> None:
    store, (a, b) = _store_with_tolls("A", "B")
    calculator = get_or_create_state_calculator(store, "FL", "Florida")
    ghost = uuid.uuid4()

    result = batch_upsert_prices(
        store,
        {
            CorridorKey(calculator.id, a.id, a.id): [_fact(1.0)],
            CorridorKey(calculator.id, a.id, ghost): [_fact(1.0)],
            PriceOwner.direct(ghost): [_fact(1.0)],
            CorridorKey(calculator.id, a.id, b.id): [_fact(1.0)],
        },
    )

    assert sorted(f.reason_code for f in result.failures) == ["invalid_toll_pair", "toll_not_found", "toll_not_found"]
    assert result.applied == 1
    assert len(store.calculate_prices()) == 1


def test_batch_upsert_reports_conflicts_and_last_write_wins() -> None:
    store, (toll,) = _store_with_tolls("A")
    result = batch_upsert_prices(store, {PriceOwner.direct(toll.id): [_fact(1.0), _fact(1.0), _fact(1.4)]})

    assert len(result.conflicts) == 1
    assert result.conflicts[0].reason_code == "conflicting_upsert"
    assert len(toll.toll_prices) == 1
    assert toll.toll_prices[0].amount == 1.4


def test_batch_upsert_rolls_back_on_unexpected_error(monkeypatch) -> None:
    store, (a, b) = _store_with_tolls("A", "B")
    calculator = get_or_create_state_calculator(store, "FL", "Florida")
    real_apply = price_ledger.apply_fact
    calls = {"n": 0}

    def flaky_apply(entity, fact):
        calls["n"] += 1
        if calls["n"] == 2:
            raise RuntimeError("disk full")
        return real_apply(entity, fact)

    monkeypatch.setattr(price_ledger, "apply_fact", flaky_apply)

    with pytest.raises(RuntimeError):
        batch_upsert_prices(
            store,
            {
                PriceOwner.direct(a.id): [_fact(1.0)],
                CorridorKey(calculator.id, a.id, b.id): [_fact(2.0)],
            },
        )

    assert store.calculate_prices() == []
    assert store.get_toll(a.id).toll_prices == []


def test_state_calculator_is_found_or_created_once() -> None:
    store = TollStore()
    created = get_or_create_state_calculator(store, "nj", "New Jersey Turnpike")
    again = get_or_create_state_calculator(store, "NJ", "ignored")
    assert created.id == again.id
    assert created.state_code == "NJ"
    assert len(store.state_calculators()) == 1


def test_state_calculator_insert_race_returns_the_winner(monkeypatch) -> None:
    store = TollStore()
    winner = store.add_state_calculator(StateCalculator(state_code="MD", name="Maryland"))
    real_find = store.find_state_calculator_by_code
    calls = {"n": 0}

    def stale_find(state_code: str):
        calls["n"] += 1
        if calls["n"] == 1:
            # The first read happens before the concurrent insert is visible.
            return None
        return real_find(state_code)

    monkeypatch.setattr(store, "find_state_calculator_by_code", stale_find)

    found = get_or_create_state_calculator(store, "MD", "Maryland Toll Facilities")

    assert found.id == winner.id
    assert calls["n"] == 2
    assert len(store.state_calculators()) == 1
