from __future__ import annotations

import os
from pathlib import Path

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _running_in_docker() -> bool:
    """Best-effort check for container execution.

    Used only to pick sensible defaults. Environment variables always win.
    """
    return Path("/.dockerenv").exists() or os.environ.get("RUNNING_IN_DOCKER") == "1"


def _default_out_dir() -> str:
    # Keep snapshots and logs in backend/out by default to avoid polluting source assets.
    if _running_in_docker():
        return "/app/out"
    return str(Path(__file__).resolve().parents[1] / "out")


class Settings(BaseSettings):
    """Validated settings (env-driven), keeping config out of code for easy extension."""

    model_config = SettingsConfigDict(
        # Support both "repo root/.env" and "backend/.env" (local dev)
        env_file=(".env", "../.env"),
        env_file_encoding="utf-8",
        extra="ignore",
    )

    out_dir: str = Field(default_factory=_default_out_dir, alias="OUT_DIR")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    # Road network reconstruction
    road_merge_tolerance_m: float = Field(default=1.0, gt=0.0, le=500.0, alias="ROAD_MERGE_TOLERANCE_M")
    road_merge_max_passes: int = Field(default=32, ge=1, le=1000, alias="ROAD_MERGE_MAX_PASSES")
    road_ref_match_distance_m: float = Field(default=1.0, gt=0.0, le=500.0, alias="ROAD_REF_MATCH_DISTANCE_M")

    # Toll matching / proximity
    toll_proximity_radii_m: str = Field(default="50,100,200", alias="TOLL_PROXIMITY_RADII_M")
    toll_proximity_max_count: int = Field(default=2, ge=1, le=100, alias="TOLL_PROXIMITY_MAX_COUNT")
    toll_polyline_distance_m: float = Field(default=20.0, gt=0.0, le=5_000.0, alias="TOLL_POLYLINE_DISTANCE_M")
    toll_search_radius_default_m: float = Field(
        default=500.0,
        gt=0.0,
        le=50_000.0,
        alias="TOLL_SEARCH_RADIUS_DEFAULT_M",
    )
    toll_match_min_confidence: float = Field(default=0.0, ge=0.0, le=1.0, alias="TOLL_MATCH_MIN_CONFIDENCE")

    # Price ledger
    state_calculator_conflict_retries: int = Field(
        default=3,
        ge=1,
        le=20,
        alias="STATE_CALCULATOR_CONFLICT_RETRIES",
    )

    # Store snapshot; empty means "<out_dir>/store/tollroute_store.json".
    store_snapshot_path: str = Field(default="", alias="STORE_SNAPSHOT_PATH")
    store_load_snapshot_on_startup: bool = Field(default=True, alias="STORE_LOAD_SNAPSHOT_ON_STARTUP")

    @model_validator(mode="after")
    def _normalise_radii(self) -> "Settings":
        # Radii are searched smallest first; keep the configured list sorted and positive.
        self.toll_proximity_radii_m = ",".join(
            f"{radius:g}" for radius in parse_radii(self.toll_proximity_radii_m)
        )
        return self

    def proximity_radii(self) -> tuple[float, ...]:
        return parse_radii(self.toll_proximity_radii_m)

    def snapshot_path(self) -> Path:
        if self.store_snapshot_path.strip():
            return Path(self.store_snapshot_path.strip())
        return Path(self.out_dir) / "store" / "tollroute_store.json"


def parse_radii(raw: str) -> tuple[float, ...]:
    values: set[float] = set()
    for part in str(raw or "").split(","):
        text = part.strip()
        if not text:
            continue
        try:
            value = float(text)
        except ValueError:
            continue
        if value > 0.0:
            values.add(value)
    if not values:
        return (50.0, 100.0, 200.0)
    return tuple(sorted(values))


settings = Settings()
