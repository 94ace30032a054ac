from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from .domain import Toll
from .geometry import haversine_m, is_valid_lat_lon
from .logging_utils import log_event
from .settings import settings

CLEARANCE_M = 0.1
LOCATION_ROUND_DIGITS = 7
# Tolls squeezed below this radius get one more pass among themselves.
SQUEEZED_RADIUS_M = 2.0


@dataclass(frozen=True)
class SearchRadiiReport:
    toll_count: int
    shrunk_count: int


def _has_valid_point(toll: Toll) -> bool:
    return (
        toll.latitude is not None
        and toll.longitude is not None
        and is_valid_lat_lon(float(toll.latitude), float(toll.longitude))
    )


def _location_key(toll: Toll) -> tuple[float, float]:
    return (
        round(float(toll.latitude), LOCATION_ROUND_DIGITS),  # type: ignore[arg-type]
        round(float(toll.longitude), LOCATION_ROUND_DIGITS),  # type: ignore[arg-type]
    )


def _reduce_pair(a: Toll, b: Toll, allowed_sum: float) -> None:
    total = a.search_radius_m + b.search_radius_m
    if total <= allowed_sum:
        return
    excess = total - allowed_sum
    half = excess / 2.0
    reduce_a = min(half, a.search_radius_m)
    reduce_b = min(half, b.search_radius_m)
    a.search_radius_m -= reduce_a
    b.search_radius_m -= reduce_b
    remaining = excess - (reduce_a + reduce_b)
    if remaining <= 0:
        return
    if a.search_radius_m > 0:
        take = min(remaining, a.search_radius_m)
        a.search_radius_m -= take
        remaining -= take
    if remaining > 0 and b.search_radius_m > 0:
        b.search_radius_m -= min(remaining, b.search_radius_m)


def _apply(tolls: Sequence[Toll], default_radius_m: float) -> None:
    ordered = sorted(tolls, key=lambda toll: str(toll.id))
    for toll in ordered:
        toll.search_radius_m = float(default_radius_m) if _has_valid_point(toll) else 0.0

    # Tolls at the same spot share one radius; otherwise d=0 would collapse them all.
    groups: dict[tuple[float, float], list[Toll]] = {}
    for toll in ordered:
        if _has_valid_point(toll):
            groups.setdefault(_location_key(toll), []).append(toll)
    unique = [members[0] for members in groups.values()]

    for i, a in enumerate(unique):
        if a.search_radius_m <= 0:
            continue
        for b in unique[i + 1 :]:
            if b.search_radius_m <= 0:
                continue
            d = haversine_m(
                float(a.latitude), float(a.longitude), float(b.latitude), float(b.longitude)  # type: ignore[arg-type]
            )
            allowed_sum = max(0.0, d - CLEARANCE_M)
            if a.search_radius_m + b.search_radius_m <= allowed_sum:
                continue
            _reduce_pair(a, b, allowed_sum)

    for members in groups.values():
        radius = members[0].search_radius_m
        for toll in members:
            toll.search_radius_m = radius


def apply_non_overlapping_radii(
    tolls: Sequence[Toll],
    default_radius_m: float | None = None,
) -> SearchRadiiReport:
    """Give each toll the largest search radius (up to the default) that keeps circles apart.

    Pairs are visited in id order so the result is deterministic. Tolls without a
    valid point get radius 0.
    """
    radius = settings.toll_search_radius_default_m if default_radius_m is None else float(default_radius_m)
    if not tolls:
        return SearchRadiiReport(toll_count=0, shrunk_count=0)
    _apply(tolls, radius)
    squeezed = [toll for toll in tolls if toll.search_radius_m < SQUEEZED_RADIUS_M]
    if squeezed:
        _apply(squeezed, radius)
    shrunk = sum(1 for toll in tolls if toll.search_radius_m < radius)
    log_event(
        "toll_search_radii_applied",
        toll_count=len(tolls),
        shrunk_count=shrunk,
        squeezed_count=len(squeezed),
        default_radius_m=radius,
    )
    return SearchRadiiReport(toll_count=len(tolls), shrunk_count=shrunk)
