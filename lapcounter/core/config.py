"""
Configuration Management for the Lap Counter

Provides validated configuration with sensible defaults.
Every field can be overridden with a LAPCOUNTER_* environment variable.

Design:
- Immutable after construction
- Fail-fast on invalid configuration
- Type-safe with dataclasses
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from lapcounter.core.types import Result, Ok, Err
from lapcounter.core import constants as C

STORE_BACKENDS = ("memory", "filesystem", "s3", "redis")
COMPRESSION_MODES = ("none", "lz4")
BACKOFF_STRATEGIES = ("linear", "exponential")


@dataclass(frozen=True)
class StoreConfig:
    """Object store backend configuration."""

    backend: str = "memory"
    data_dir: Path = field(default_factory=lambda: Path(C.DEFAULT_STORE_DIR))
    key_prefix: str = C.DEFAULT_KEY_PREFIX
    compression: str = "none"
    s3_bucket: str = C.DEFAULT_S3_BUCKET
    s3_endpoint: Optional[str] = None
    s3_region: str = C.DEFAULT_S3_REGION
    redis_url: str = C.DEFAULT_REDIS_URL
    timeout_s: float = C.STORE_TIMEOUT_S


@dataclass(frozen=True)
class ReconcilerConfig:
    """Retry and verification policy for read-modify-write cycles."""

    max_attempts: int = C.RETRY_MAX_ATTEMPTS
    backoff_ms: int = C.RETRY_BASE_MS
    max_backoff_ms: int = C.RETRY_MAX_DELAY_MS
    backoff_strategy: str = "linear"
    verify_writes: bool = True
    strict_verify: bool = False


@dataclass(frozen=True)
class ServerConfig:
    """HTTP server binding."""

    host: str = C.DEFAULT_HOST
    port: int = C.DEFAULT_PORT
    max_request_bytes: int = C.MAX_REQUEST_BYTES


@dataclass(frozen=True)
class ObservabilityConfig:
    """Logging configuration."""

    log_level: str = "INFO"
    log_json: bool = True


@dataclass(frozen=True)
class LapCounterConfig:
    """Root configuration."""

    store: StoreConfig = field(default_factory=StoreConfig)
    reconciler: ReconcilerConfig = field(default_factory=ReconcilerConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    observability: ObservabilityConfig = field(default_factory=ObservabilityConfig)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Result[LapCounterConfig, str]:
        """
        Load configuration from environment variables.

        Environment variables are prefixed with LAPCOUNTER_.
        Example: LAPCOUNTER_STORE_BACKEND=filesystem, LAPCOUNTER_MAX_ATTEMPTS=5
        """
        env = os.environ if environ is None else environ

        def get(name: str, default: str) -> str:
            return env.get(f"LAPCOUNTER_{name}", default)

        try:
            store = StoreConfig(
                backend=get("STORE_BACKEND", "memory").lower(),
                data_dir=Path(get("STORE_DIR", C.DEFAULT_STORE_DIR)),
                key_prefix=get("KEY_PREFIX", C.DEFAULT_KEY_PREFIX).strip("/"),
                compression=get("COMPRESSION", "none").lower(),
                s3_bucket=get("S3_BUCKET", C.DEFAULT_S3_BUCKET),
                s3_endpoint=env.get("LAPCOUNTER_S3_ENDPOINT") or None,
                s3_region=get("S3_REGION", C.DEFAULT_S3_REGION),
                redis_url=get("REDIS_URL", C.DEFAULT_REDIS_URL),
                timeout_s=float(get("STORE_TIMEOUT_S", str(C.STORE_TIMEOUT_S))),
            )

            reconciler = ReconcilerConfig(
                max_attempts=int(get("MAX_ATTEMPTS", str(C.RETRY_MAX_ATTEMPTS))),
                backoff_ms=int(get("BACKOFF_MS", str(C.RETRY_BASE_MS))),
                max_backoff_ms=int(get("MAX_BACKOFF_MS", str(C.RETRY_MAX_DELAY_MS))),
                backoff_strategy=get("BACKOFF_STRATEGY", "linear").lower(),
                verify_writes=_parse_bool(get("VERIFY_WRITES", "true")),
                strict_verify=_parse_bool(get("STRICT_VERIFY", "false")),
            )

            server = ServerConfig(
                host=get("HOST", C.DEFAULT_HOST),
                port=int(get("PORT", str(C.DEFAULT_PORT))),
            )

            observability = ObservabilityConfig(
                log_level=get("LOG_LEVEL", "INFO").upper(),
                log_json=_parse_bool(get("LOG_JSON", "true")),
            )

            return Ok(cls(
                store=store,
                reconciler=reconciler,
                server=server,
                observability=observability,
            ))
        except (ValueError, TypeError) as e:
            return Err(f"Configuration error: {e}")

    def validate(self) -> Result[None, str]:
        """Validate configuration invariants."""
        if self.store.backend not in STORE_BACKENDS:
            return Err(f"Unknown store backend '{self.store.backend}'")
        if self.store.compression not in COMPRESSION_MODES:
            return Err(f"Unknown compression '{self.store.compression}'")
        if not self.store.key_prefix:
            return Err("Key prefix cannot be empty")
        if self.reconciler.max_attempts < 1:
            return Err("max_attempts must be >= 1")
        if self.reconciler.backoff_ms < 0:
            return Err("backoff_ms cannot be negative")
        if self.reconciler.backoff_strategy not in BACKOFF_STRATEGIES:
            return Err(f"Unknown backoff strategy '{self.reconciler.backoff_strategy}'")
        if not 0 < self.server.port < 65536:
            return Err(f"Port {self.server.port} out of range")
        return Ok(None)


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off", ""):
        return False
    raise ValueError(f"Not a boolean: {value!r}")
