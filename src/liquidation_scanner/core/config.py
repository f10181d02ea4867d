"""Scanner configuration.

Two layers:
- ScannerSettings: process-level settings read from the environment (and a
  ``.env`` file via python-dotenv): RPC endpoint, log location, deployment
  and watch-list files.
- ScanConfig: per-cycle parameters validated with pydantic. Invalid input
  raises ConfigurationError before any work begins.
"""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Mapping

from dotenv import load_dotenv
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from liquidation_scanner.core.errors import ConfigurationError
from liquidation_scanner.data.constants import (
    DEFAULT_PROTOCOL_DEPLOYMENTS,
    DEFAULT_VENUE_DEPLOYMENTS,
)
from liquidation_scanner.data.discovery import DEFAULT_LOG_CHUNK_SIZE


class RankingPolicy(str, Enum):
    """Primary ordering of opportunities in a report."""

    RATIO_FIRST = "ratio_first"  # Lowest health ratio first, value breaks ties
    VALUE_FIRST = "value_first"  # Largest extractable value first, ratio breaks ties


class BlockWindow(BaseModel):
    """Block range searched by event discovery.

    Missing bounds are resolved against the latest block when a cycle starts.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    from_block: int | None = Field(default=None, ge=0)
    to_block: int | None = Field(default=None, ge=0)
    lookback_blocks: int = Field(
        default=10_000, gt=0, description="Used when from_block is not given"
    )

    @model_validator(mode="after")
    def check_order(self) -> BlockWindow:
        if (
            self.from_block is not None
            and self.to_block is not None
            and self.from_block > self.to_block
        ):
            raise ValueError("from_block must not exceed to_block")
        return self

    def resolve(self, latest_block: int) -> tuple[int, int]:
        """Concrete (from_block, to_block) for a chain at ``latest_block``."""
        to_block = self.to_block if self.to_block is not None else latest_block
        if self.from_block is not None:
            from_block = self.from_block
        else:
            from_block = max(0, to_block - self.lookback_blocks + 1)
        return from_block, to_block


class ScanConfig(BaseModel):
    """Parameters for one scan cycle."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    protocols: tuple[str, ...] = Field(min_length=1)
    max_users_per_protocol: int = Field(default=100, gt=0)
    block_window: BlockWindow = Field(default_factory=BlockWindow)
    venues: tuple[str, ...] = ()
    per_call_timeout_ms: int = Field(default=5_000, gt=0)
    per_protocol_deadline_ms: int = Field(default=60_000, gt=0)

    max_concurrency_per_protocol: int = Field(default=10, gt=0)
    retry_attempts: int = Field(default=3, ge=1)
    ranking_policy: RankingPolicy = RankingPolicy.RATIO_FIRST
    quote_timeout_ms: int | None = Field(
        default=None, gt=0, description="Per-venue quote timeout; per_call_timeout_ms if unset"
    )
    cancel_grace_ms: int = Field(
        default=1_000, ge=0, description="Wait for workers to unwind after a deadline"
    )

    @field_validator("protocols", "venues", mode="before")
    @classmethod
    def normalize_ids(cls, v: Any) -> tuple[str, ...]:
        if isinstance(v, str):
            v = [v]
        ids = tuple(str(item).strip().lower() for item in v)
        if len(set(ids)) != len(ids):
            raise ValueError(f"duplicate entries: {list(ids)}")
        if any(not item for item in ids):
            raise ValueError("empty identifier")
        return ids

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> ScanConfig:
        """Validate a plain mapping (e.g. parsed JSON).

        Raises:
            ConfigurationError: On missing, unknown or invalid fields.
        """
        try:
            return cls.model_validate(dict(data))
        except ValidationError as e:
            raise ConfigurationError(f"Invalid scan configuration: {e}") from e

    @property
    def per_call_timeout(self) -> float:
        return self.per_call_timeout_ms / 1000

    @property
    def per_protocol_deadline(self) -> float:
        return self.per_protocol_deadline_ms / 1000

    @property
    def quote_timeout(self) -> float:
        return (self.quote_timeout_ms or self.per_call_timeout_ms) / 1000

    @property
    def cancel_grace(self) -> float:
        return self.cancel_grace_ms / 1000


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e


def _env_path(name: str, default: str | None = None) -> Path | None:
    raw = os.getenv(name, default or "")
    return Path(raw) if raw.strip() else None


@dataclass
class ScannerSettings:
    """Process-level settings."""

    rpc_url: str | None = None
    log_dir: Path | None = Path("logs")
    log_level: str = "INFO"
    deployments_file: Path | None = None
    watchlist_file: Path | None = None
    log_chunk_size: int = DEFAULT_LOG_CHUNK_SIZE
    protocol_deployments: dict[str, dict[str, Any]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_PROTOCOL_DEPLOYMENTS)
    )
    venue_deployments: dict[str, dict[str, Any]] = field(
        default_factory=lambda: copy.deepcopy(DEFAULT_VENUE_DEPLOYMENTS)
    )

    @classmethod
    def from_env(cls) -> ScannerSettings:
        """Load settings from environment variables.

        Variables: RPC_URL, LOG_DIR, LOG_LEVEL, DEPLOYMENTS_FILE,
        WATCHLIST_FILE, LOG_CHUNK_SIZE.

        Raises:
            ConfigurationError: If a variable is malformed or a referenced
                file cannot be read.
        """
        load_dotenv()

        settings = cls(
            rpc_url=os.getenv("RPC_URL") or None,
            log_dir=_env_path("LOG_DIR", "logs"),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
            deployments_file=_env_path("DEPLOYMENTS_FILE"),
            watchlist_file=_env_path("WATCHLIST_FILE"),
            log_chunk_size=_env_int("LOG_CHUNK_SIZE", DEFAULT_LOG_CHUNK_SIZE),
        )
        if settings.log_chunk_size <= 0:
            raise ConfigurationError("LOG_CHUNK_SIZE must be positive")
        if settings.deployments_file is not None:
            settings.merge_deployments_file(settings.deployments_file)
        return settings

    def merge_deployments_file(self, path: Path) -> None:
        """Overlay deployments from a JSON file.

        Expected format:
            {"protocols": {"abracadabra": {"cauldrons": ["0x..."]}},
             "venues": {"camelot": {"router": "0x..."}}}

        Entries for unknown ids are added; known ids are updated field by field.
        """
        try:
            with open(path) as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(f"Cannot read deployments file {path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"Deployments file {path} must contain an object")

        for section, target in (
            ("protocols", self.protocol_deployments),
            ("venues", self.venue_deployments),
        ):
            for name, overrides in (data.get(section) or {}).items():
                if not isinstance(overrides, dict):
                    raise ConfigurationError(f"{section}.{name} must be an object")
                target.setdefault(name.lower(), {}).update(overrides)

    @property
    def known_protocols(self) -> list[str]:
        return sorted(self.protocol_deployments)

    @property
    def known_venues(self) -> list[str]:
        return sorted(self.venue_deployments)
