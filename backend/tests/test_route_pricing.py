from __future__ import annotations

import uuid

import pytest

from tollroute.domain import CalculatePrice, StateCalculator, Toll, TollPaymentType
from tollroute.geometry import geodesic_length_m, polyline_from_latlon
from tollroute.price_ledger import set_price
from tollroute.route_pricing import (
    RouteSection,
    TollEncounter,
    locate_toll_encounters,
    price_encounters,
    price_route_sections,
    resolve_route_prices,
)
from tollroute.store import TollStore

CALC = uuid.UUID(int=100)
M = 1.0 / 111_320.0


def _toll(name: str | None, *, calculator: uuid.UUID | None = None, **kwargs) -> Toll:
    return Toll(name=name, state_calculator_id=calculator, **kwargs)


def _index(*tolls: Toll) -> dict[uuid.UUID, Toll]:
    return {t.id: t for t in tolls}


def test_corridor_then_flat_toll() -> None:
    a = _toll("A", calculator=CALC)
    b = _toll("B", calculator=CALC)
    c = _toll("C", pay_online=1.10, ipass=0.80, pay_online_overnight=0.90, ipass_overnight=0.60)
    ab = CalculatePrice(state_calculator_id=CALC, from_id=a.id, to_id=b.id, cash=2.50)
    encounters = [TollEncounter(a.id, 0.0), TollEncounter(b.id, 5.0), TollEncounter(c.id, 12.0)]

    entries = resolve_route_prices(encounters, _index(a, b, c), [ab])

    assert [(e.toll_id, e.kind) for e in entries] == [(b.id, "corridor"), (c.id, "flat")]
    corridor, flat = entries
    assert corridor.from_toll_id == a.id
    assert corridor.cash == 2.50
    assert corridor.distance == 5.0
    assert corridor.calculate_price_id == ab.id
    assert flat.cash == 1.10
    assert flat.transponder == 0.80
    assert flat.cash_overnight == 0.90
    assert flat.transponder_overnight == 0.60


def test_farthest_priced_exit_wins_and_skips_intermediate_tolls() -> None:
    a = _toll("A", calculator=CALC)
    b = _toll("B", calculator=CALC)
    d = _toll("D", calculator=CALC)
    ab = CalculatePrice(state_calculator_id=CALC, from_id=a.id, to_id=b.id, cash=1.0)
    ad = CalculatePrice(state_calculator_id=CALC, from_id=a.id, to_id=d.id, cash=3.0, ipass=2.0)

    entries = resolve_route_prices(
        [TollEncounter(b.id, 5.0), TollEncounter(a.id, 0.0), TollEncounter(d.id, 9.0)],
        _index(a, b, d),
        [ab, ad],
    )

    assert len(entries) == 1
    assert entries[0].toll_id == d.id
    assert entries[0].cash == 3.0
    assert entries[0].transponder == 2.0


def test_unpriced_fallback_takes_the_farthest_candidate_and_spends_both_names() -> None:
    a = _toll("A", calculator=CALC)
    b = _toll("B", calculator=CALC)
    d = _toll("D", calculator=CALC)
    c = _toll("C", pay_online=1.0)

    entries = resolve_route_prices(
        [TollEncounter(a.id, 0.0), TollEncounter(b.id, 5.0), TollEncounter(d.id, 9.0), TollEncounter(c.id, 7.0)],
        _index(a, b, d, c),
        [],
    )

    # C sits before the chosen exit, so the cursor skips it.
    assert [(e.toll_id, e.kind) for e in entries] == [(d.id, "unpriced")]
    assert entries[0].cash is None
    assert entries[0].transponder is None
    assert entries[0].from_toll_id == a.id


def test_corridor_toll_without_candidates_emits_nothing() -> None:
    a = _toll("A", calculator=CALC)
    other = _toll("X", calculator=uuid.UUID(int=7))
    entries = resolve_route_prices([TollEncounter(a.id, 0.0), TollEncounter(other.id, 3.0)], _index(a, other), [])
    assert entries == []


def test_same_name_is_never_charged_twice() -> None:
    a_north = _toll("Plaza A", calculator=CALC)
    b = _toll("Plaza B", calculator=CALC)
    a_south = _toll("plaza a", calculator=CALC)
    b_again = _toll("PLAZA B", calculator=CALC)
    price = CalculatePrice(state_calculator_id=CALC, from_id=a_north.id, to_id=b.id, cash=4.0)

    entries = resolve_route_prices(
        [
            TollEncounter(a_north.id, 0.0),
            TollEncounter(b.id, 2.0),
            TollEncounter(a_south.id, 3.0),
            TollEncounter(b_again.id, 4.0),
        ],
        _index(a_north, b, a_south, b_again),
        [price],
    )

    # Corridor prices are keyed by plaza name, so the farthest "Plaza B" closes the corridor.
    assert [(e.toll_id, e.distance) for e in entries] == [(b_again.id, 4.0)]


def test_flat_tolls_repeat_when_crossed_twice() -> None:
    bridge = _toll("Bridge", pay_online=2.0)
    entries = resolve_route_prices([TollEncounter(bridge.id, 1.0), TollEncounter(bridge.id, 8.0)], _index(bridge), [])
    assert [e.distance for e in entries] == [1.0, 8.0]


def test_fine_grained_prices_override_legacy_scalars() -> None:
    a = _toll("A", calculator=CALC)
    b = _toll("B", calculator=CALC)
    ab = CalculatePrice(state_calculator_id=CALC, from_id=a.id, to_id=b.id, cash=2.0, ipass=1.5)
    set_price(ab, 2.75, TollPaymentType.CASH)
    set_price(ab, 0.0, TollPaymentType.EZPASS)
    flat = _toll("F", pay_online=1.0)
    set_price(flat, 1.2, TollPaymentType.CASH)

    entries = resolve_route_prices(
        [TollEncounter(a.id, 0.0), TollEncounter(b.id, 1.0), TollEncounter(flat.id, 2.0)],
        _index(a, b, flat),
        [ab],
    )

    assert entries[0].cash == 2.75
    # A zero fine-grained amount falls back to the legacy transponder rate.
    assert entries[0].transponder == 1.5
    assert entries[1].cash == 1.2


def test_unknown_toll_ids_are_ignored() -> None:
    c = _toll("C", pay_online=1.0)
    entries = resolve_route_prices([TollEncounter(uuid.uuid4(), 0.0), TollEncounter(c.id, 1.0)], _index(c), [])
    assert [e.toll_id for e in entries] == [c.id]


def test_locate_toll_encounters_measures_distance_along_route() -> None:
    section = [[26.0, -80.0], [26.01, -80.0]]
    line = polyline_from_latlon(section)
    half = geodesic_length_m(line) / 2.0
    middle = Toll(name="Middle", latitude=26.005, longitude=-80.0 + 10 * M)
    start = Toll(name="Start", latitude=26.0, longitude=-80.0)
    off = Toll(name="Off", latitude=26.005, longitude=-80.0 + 100 * M)

    encounters = locate_toll_encounters([RouteSection(section, "leg-1")], [off, middle, start], distance_m=20.0)

    assert [e.toll_id for e in encounters] == [start.id, middle.id]
    assert encounters[0].distance == 0.0
    assert encounters[1].distance == pytest.approx(half, rel=1e-3)
    assert {e.route_section for e in encounters} == {"leg-1"}


def test_locate_toll_encounters_accumulates_section_lengths() -> None:
    first = [[26.0, -80.0], [26.01, -80.0]]
    second = [[26.01, -80.0], [26.02, -80.0]]
    later = Toll(name="Later", latitude=26.015, longitude=-80.0)

    encounters = locate_toll_encounters(
        [RouteSection(first, "a"), RouteSection([[1.0, 1.0]], "bad"), RouteSection(second, "b")],
        [later],
    )

    first_len = geodesic_length_m(polyline_from_latlon(first))
    assert len(encounters) == 1
    assert encounters[0].route_section == "b"
    assert encounters[0].distance == pytest.approx(first_len * 1.5, rel=1e-3)


def _florida_store() -> tuple[TollStore, Toll, Toll, Toll]:
    store = TollStore()
    calculator = store.add_state_calculator(StateCalculator(state_code="FL", name="Florida Turnpike"))
    entry = store.add_toll(Toll(name="Entry", latitude=26.0, longitude=-80.0, state_calculator_id=calculator.id))
    exit_ = store.add_toll(Toll(name="Exit", latitude=26.01, longitude=-80.0, state_calculator_id=calculator.id))
    bridge = store.add_toll(Toll(name="Bridge", latitude=26.02, longitude=-80.0, pay_online=1.5, ipass=1.0))
    store.add_calculate_price(
        CalculatePrice(state_calculator_id=calculator.id, from_id=entry.id, to_id=exit_.id, cash=3.25, ipass=2.75)
    )
    return store, entry, exit_, bridge


def test_price_route_sections_end_to_end() -> None:
    store, entry, exit_, bridge = _florida_store()

    result = price_route_sections(store, [RouteSection([[25.999, -80.0], [26.021, -80.0]], "main")])

    assert [(e.toll_id, e.kind) for e in result.entries] == [(exit_.id, "corridor"), (bridge.id, "flat")]
    assert result.total_cash == pytest.approx(4.75)
    assert result.total_transponder == pytest.approx(3.75)
    assert result.unpriced_count == 0


def test_price_encounters_reports_unknown_tolls_and_uses_shared_names() -> None:
    store, entry, exit_, _ = _florida_store()
    # Same plaza name as the priced entry, different record.
    twin = store.add_toll(
        Toll(name="Entry", latitude=26.0001, longitude=-80.0, state_calculator_id=entry.state_calculator_id)
    )
    ghost = uuid.uuid4()

    result = price_encounters(store, [TollEncounter(twin.id, 0.0), TollEncounter(exit_.id, 10.0), TollEncounter(ghost, 11.0)])

    assert result.unknown_toll_ids == [ghost]
    assert [e.toll_id for e in result.entries] == [exit_.id]
    assert result.entries[0].cash == 3.25
