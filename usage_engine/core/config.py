"""Engine configuration loading utilities."""

from __future__ import annotations

import os
import pathlib
from decimal import Decimal
from functools import lru_cache
from typing import Dict, List

import yaml
from pydantic import BaseModel, Field

BASE_DIR = pathlib.Path(__file__).resolve().parent.parent
DEFAULT_CONFIG_PATH = BASE_DIR.parent / "config" / "engine.yaml"


class IngestSettings(BaseModel):
    timeout_seconds: float = Field(default=10.0, gt=0)
    max_records_per_batch: int = Field(default=5000, gt=0)


class RollupSettings(BaseModel):
    timeout_seconds: float = Field(default=15.0, gt=0)
    top_n: int = Field(default=10, gt=0)
    max_buckets: int = Field(default=24 * 93, gt=0)
    default_window_hours: int = Field(default=24, gt=0)


class ModelPrice(BaseModel):
    input_per_million_usd: Decimal = Decimal("0")
    output_per_million_usd: Decimal = Decimal("0")
    per_request_usd: Decimal = Decimal("0")


class VendorAlias(BaseModel):
    """Maps a service or SDK name fragment onto a canonical vendor."""

    match: str
    vendor: str
    display_name: str
    category: str | None = None


class AppConfig(BaseModel):
    ingest: IngestSettings = Field(default_factory=IngestSettings)
    rollup: RollupSettings = Field(default_factory=RollupSettings)
    pricing: Dict[str, ModelPrice] = Field(default_factory=dict)
    vendors: List[VendorAlias] = Field(default_factory=list)


@lru_cache(maxsize=1)
def load_config(path: pathlib.Path | None = None) -> AppConfig:
    """Load engine configuration from YAML, falling back to defaults."""
    config_path = path or pathlib.Path(os.getenv("ENGINE_CONFIG", str(DEFAULT_CONFIG_PATH)))
    if not config_path.exists():
        return AppConfig()
    raw = yaml.safe_load(config_path.read_text()) or {}
    return AppConfig(**raw)
