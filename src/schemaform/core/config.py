"""
Engine configuration loaded from ``schemaform.toml`` and the environment.

    [authority]
    base_url = "https://example.test"
    api_prefix = "/api/app"
    timeout = 30.0

    [engine]
    debounce_seconds = 0.3
    result_cache_size = 500
    dependency_cache_size = 200
    schema_ttl_seconds = 1800
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path

CONFIG_FILENAME = "schemaform.toml"


# =============================================================================
# Sections
# =============================================================================


@dataclass
class AuthorityConfig:
    """Remote record authority connection settings."""

    base_url: str = "http://localhost:8000"
    api_prefix: str = "/api/app"
    timeout: float = 30.0
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class EngineConfig:
    """Form engine tuning knobs."""

    debounce_seconds: float = 0.3
    result_cache_size: int = 500
    dependency_cache_size: int = 200
    schema_ttl_seconds: float = 1800.0
    authority: AuthorityConfig = field(default_factory=AuthorityConfig)


# =============================================================================
# Loading
# =============================================================================


def load_config(path: Path | None = None) -> EngineConfig:
    """Load configuration from a TOML file, then apply environment overrides.

    A missing file yields the defaults. ``path`` may point at the file or at
    a directory containing ``schemaform.toml``.
    """
    data: dict = {}
    if path is not None:
        if path.is_dir():
            path = path / CONFIG_FILENAME
        if path.exists():
            data = tomllib.loads(path.read_text(encoding="utf-8"))

    authority_data = data.get("authority", {})
    engine_data = data.get("engine", {})

    authority = AuthorityConfig(
        base_url=authority_data.get("base_url", "http://localhost:8000"),
        api_prefix=authority_data.get("api_prefix", "/api/app"),
        timeout=float(authority_data.get("timeout", 30.0)),
        headers=dict(authority_data.get("headers", {})),
    )
    config = EngineConfig(
        debounce_seconds=float(engine_data.get("debounce_seconds", 0.3)),
        result_cache_size=int(engine_data.get("result_cache_size", 500)),
        dependency_cache_size=int(engine_data.get("dependency_cache_size", 200)),
        schema_ttl_seconds=float(engine_data.get("schema_ttl_seconds", 1800.0)),
        authority=authority,
    )
    _apply_env_overrides(config)
    return config


def _apply_env_overrides(config: EngineConfig) -> None:
    base_url = os.environ.get("SCHEMAFORM_BASE_URL")
    if base_url:
        config.authority.base_url = base_url

    token = os.environ.get("SCHEMAFORM_API_TOKEN")
    if token:
        config.authority.headers["Authorization"] = f"Bearer {token}"

    debounce = os.environ.get("SCHEMAFORM_DEBOUNCE_SECONDS")
    if debounce:
        config.debounce_seconds = float(debounce)
