"""
Pydantic v2 Configuration Models for PageWatch

Provides strict, typed configuration for the watcher subsystems:
- HTTP transfer settings (user agent, timeouts, chunk size, TLS)
- Concurrency settings (per-host connections, worker pools, scheduler)
- Download policy (try cap, hash verification, thumbnails, file naming)
- Watch settings (download directory, check interval, one-time runs)
- Top-level ThreadWatchConfig as single source of truth

All models use extra="forbid" for strict validation. Environment variables
and CLI overrides follow: file < env < CLI precedence.
"""

from __future__ import annotations

import hashlib
import json
from typing import ClassVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

# ============================================================================
# Section Models
# ============================================================================


class HttpSettings(BaseModel):
    """Configuration for HTTP transfers."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    user_agent: str = Field(default="ThreadWatch/1.0", description="User-Agent string")
    request_timeout_s: float = Field(
        default=60.0, description="Connect and response-header timeout in seconds"
    )
    read_timeout_s: float = Field(default=60.0, description="Per-chunk read timeout in seconds")
    chunk_size: int = Field(default=8192, description="Body read size in bytes")
    verify_tls: bool = Field(default=True, description="Verify TLS certificates")

    @field_validator("request_timeout_s", "read_timeout_s")
    @classmethod
    def validate_timeouts(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("Timeouts must be > 0")
        return v

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be > 0")
        return v


class ConcurrencySettings(BaseModel):
    """Configuration for connection admission, worker pools and the scheduler."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    max_connections_per_host: int = Field(
        default=4, ge=1, description="Concurrent downloads allowed per host"
    )
    pool_min_threads: int = Field(default=4, ge=0, description="Idle worker floor per pool")
    pool_creation_delay_s: float = Field(
        default=0.5, ge=0, description="Wait for an idle worker before creating a thread"
    )
    pool_idle_timeout_s: float = Field(
        default=15.0, gt=0, description="Idle time before a worker thread exits"
    )
    scheduler_idle_timeout_s: float = Field(
        default=15.0, gt=0, description="Idle time before the scheduler loop exits"
    )
    transfer_workers: int = Field(default=64, ge=1, description="Concurrent HTTP transfers")


class DownloadSettings(BaseModel):
    """Configuration for the download state machine."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    max_tries: int = Field(default=3, description="Attempts per logical download")
    verify_hashes: bool = Field(default=True, description="Check image digests when known")
    save_thumbnails: bool = Field(
        default=True, description="Download thumbnails and rewrite saved pages"
    )
    use_original_file_names: bool = Field(
        default=False, description="Name images after the uploader's file name when known"
    )

    @field_validator("max_tries")
    @classmethod
    def validate_max_tries(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_tries must be >= 1")
        return v


class WatchSettings(BaseModel):
    """Configuration for watch cycles."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid")

    download_dir: str = Field(default="downloads", description="Base download directory")
    check_interval_s: int = Field(default=60, description="Seconds between checks")
    min_check_interval_s: int = Field(default=30, ge=1, description="Lower bound for the interval")
    one_time: bool = Field(default=False, description="Stop after the first complete check")

    @field_validator("check_interval_s")
    @classmethod
    def validate_interval(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("check_interval_s must be > 0")
        return v

    @model_validator(mode="after")
    def clamp_interval(self) -> "WatchSettings":
        if self.check_interval_s < self.min_check_interval_s:
            self.check_interval_s = self.min_check_interval_s
        return self


# ============================================================================
# Top-Level Configuration
# ============================================================================


class ThreadWatchConfig(BaseModel):
    """
    Single source of truth for ThreadWatch configuration.

    Loaded from file (YAML/JSON), overlaid with environment variables,
    and finally overridden by CLI arguments. Precedence: file < env < CLI.
    """

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="forbid", validate_assignment=True)

    http: HttpSettings = Field(default_factory=HttpSettings, description="HTTP transfer settings")
    concurrency: ConcurrencySettings = Field(
        default_factory=ConcurrencySettings, description="Concurrency settings"
    )
    download: DownloadSettings = Field(
        default_factory=DownloadSettings, description="Download policy"
    )
    watch: WatchSettings = Field(default_factory=WatchSettings, description="Watch settings")

    def config_hash(self) -> str:
        """
        Compute deterministic SHA256 hash of config for reproducibility.

        Returns:
            Hex-encoded SHA256 hash of normalized config JSON.
        """
        normalized = json.dumps(self.model_dump(mode="json"), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(normalized.encode()).hexdigest()
