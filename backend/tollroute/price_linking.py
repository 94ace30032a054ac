from __future__ import annotations

from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from uuid import UUID

from shapely.geometry.base import BaseGeometry

from .domain import CorridorKey, PaymentMethod, PriceOwner, Toll
from .engine_errors import FailureDescriptor
from .logging_utils import log_event
from .models import PriceFact
from .price_ledger import (
    PriceOwnerRef,
    batch_upsert_prices,
    get_or_create_state_calculator,
    owner_label,
)
from .store import TollStore
from .toll_matching import TollSearchOptions, backfill_toll_identity, match_facilities


@dataclass(frozen=True)
class LinkedPair:
    from_id: UUID
    to_id: UUID
    from_name: str | None
    to_name: str | None
    fact_count: int


@dataclass
class LinkResult:
    linked_pairs: list[LinkedPair] = field(default_factory=list)
    linked_tolls: list[UUID] = field(default_factory=list)
    not_found_entries: list[str] = field(default_factory=list)
    not_found_exits: list[str] = field(default_factory=list)
    failures: list[FailureDescriptor] = field(default_factory=list)
    conflicts: list[FailureDescriptor] = field(default_factory=list)

    @property
    def not_found(self) -> list[str]:
        out: list[str] = []
        for name in [*self.not_found_entries, *self.not_found_exits]:
            if name not in out:
                out.append(name)
        return out


def _annotate(
    tolls: Iterable[Toll],
    website_url: str | None,
    payment_method: PaymentMethod | None,
) -> None:
    for toll in tolls:
        if website_url:
            toll.website_url = website_url
        if payment_method is not None:
            toll.payment_method = PaymentMethod(
                tag=payment_method.tag,
                no_plate=payment_method.no_plate,
                cash=payment_method.cash,
                no_card=payment_method.no_card,
                app=payment_method.app,
            )


def link_corridor_prices(
    store: TollStore,
    *,
    state_code: str,
    calculator_name: str,
    region: BaseGeometry,
    facts: Sequence[PriceFact],
    options: TollSearchOptions = TollSearchOptions.NAME_OR_KEY,
    website_url: str | None = None,
    payment_method: PaymentMethod | None = None,
) -> LinkResult:
    """Attach entry/exit price facts to every matching (entry toll, exit toll) pair in ``region``."""
    result = LinkResult()
    with store.transaction():
        calculator = get_or_create_state_calculator(store, state_code, calculator_name)

        names: list[str] = []
        for fact in facts:
            names.append(fact.facility_match_key)
            if fact.exit_match_key:
                names.append(fact.exit_match_key)
        matched = match_facilities(names, region, store.tolls(), options, spatial=store.spatial)

        owner_facts: dict[PriceOwnerRef, list[PriceFact]] = {}
        pair_names: dict[CorridorKey, tuple[str | None, str | None]] = {}
        touched: dict[UUID, Toll] = {}
        for fact in facts:
            if not fact.exit_match_key:
                result.failures.append(
                    FailureDescriptor(
                        key=fact.facility_match_key,
                        reason_code="invalid_toll_pair",
                        message="corridor price fact has no exit facility",
                    )
                )
                continue
            entries = matched.matches.get(fact.facility_match_key)
            exits = matched.matches.get(fact.exit_match_key)
            if not entries and fact.facility_match_key not in result.not_found_entries:
                result.not_found_entries.append(fact.facility_match_key)
            if not exits and fact.exit_match_key not in result.not_found_exits:
                result.not_found_exits.append(fact.exit_match_key)
            if not entries or not exits:
                continue
            for entry in entries:
                for exit_ in exits:
                    if entry.id == exit_.id:
                        continue
                    key = CorridorKey(calculator.id, entry.id, exit_.id)
                    owner_facts.setdefault(key, []).append(fact)
                    pair_names[key] = (entry.name, exit_.name)
                    touched[entry.id] = entry
                    touched[exit_.id] = exit_

        backfill_toll_identity(touched.values(), state_calculator_id=calculator.id)
        _annotate(touched.values(), website_url, payment_method)

        batch = batch_upsert_prices(store, owner_facts)
        result.failures.extend(batch.failures)
        result.conflicts.extend(batch.conflicts)
        failed = {failure.key for failure in batch.failures}
        for key, pair_facts in owner_facts.items():
            if owner_label(key) in failed:
                continue
            from_name, to_name = pair_names[key]
            result.linked_pairs.append(
                LinkedPair(
                    from_id=key.from_id,
                    to_id=key.to_id,
                    from_name=from_name,
                    to_name=to_name,
                    fact_count=len(pair_facts),
                )
            )
        result.linked_tolls = sorted(touched, key=str)

    log_event(
        "corridor_prices_linked",
        state_code=state_code,
        fact_count=len(facts),
        linked_pair_count=len(result.linked_pairs),
        not_found_count=len(result.not_found),
        failure_count=len(result.failures),
    )
    return result


def link_direct_prices(
    store: TollStore,
    *,
    region: BaseGeometry,
    facts: Sequence[PriceFact],
    options: TollSearchOptions = TollSearchOptions.NAME_OR_KEY,
    number_from_key: bool = False,
    website_url: str | None = None,
    payment_method: PaymentMethod | None = None,
) -> LinkResult:
    """Attach flat price facts to each toll matching the fact's facility name.

    With ``number_from_key`` the matched key is also written to the toll's operator
    number when it differs.
    """
    result = LinkResult()
    with store.transaction():
        matched = match_facilities(
            [fact.facility_match_key for fact in facts],
            region,
            store.tolls(),
            options,
            spatial=store.spatial,
        )
        result.not_found_entries = list(matched.not_found)

        owner_facts: dict[PriceOwnerRef, list[PriceFact]] = {}
        touched: dict[UUID, Toll] = {}
        for fact in facts:
            for toll in matched.matches.get(fact.facility_match_key, []):
                owner_facts.setdefault(PriceOwner.direct(toll.id), []).append(fact)
                touched[toll.id] = toll
                if number_from_key:
                    backfill_toll_identity([toll], number=fact.facility_match_key)

        _annotate(touched.values(), website_url, payment_method)
        batch = batch_upsert_prices(store, owner_facts)
        result.failures.extend(batch.failures)
        result.conflicts.extend(batch.conflicts)
        result.linked_tolls = sorted(touched, key=str)

    log_event(
        "direct_prices_linked",
        fact_count=len(facts),
        linked_toll_count=len(result.linked_tolls),
        not_found_count=len(result.not_found),
    )
    return result
