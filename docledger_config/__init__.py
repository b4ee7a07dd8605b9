"""
docledger_config -- Company configuration.

Responsibility:
    Provides per-company configuration to the services layer through a
    ``ConfigRegistry``.  YAML is parsed once by the loader; callers only
    ever see frozen ``CompanyConfig`` objects.

Architecture position:
    Configuration -- imported by ``docledger_services`` only.  The kernel
    and the engines never import from this package.

Invariants enforced:
    - A company without its own section gets the defaults under its own
      company id.
    - Every load emits a ``DOCLEDGER_CONFIG_TRACE`` log entry with the
      checksum of each company section, tying processed documents back to
      the configuration that governed them.

Failure modes:
    - ``ConfigurationError`` for malformed values.
    - ``FileNotFoundError`` / ``yaml.YAMLError`` for unreadable files.
"""

from __future__ import annotations

import threading
from dataclasses import replace
from pathlib import Path

from docledger_config.loader import DEFAULTS_PATH, load_config, load_yaml_file, parse_company
from docledger_config.schema import (
    ApprovalTier,
    CloseConfig,
    CompanyConfig,
    CurrencyConfig,
    PipelineConfig,
)
from docledger_kernel.logging_config import get_logger

logger = get_logger("config")

__all__ = [
    "ApprovalTier",
    "CloseConfig",
    "CompanyConfig",
    "ConfigRegistry",
    "CurrencyConfig",
    "PipelineConfig",
    "default_config",
    "load_config",
]


def default_config(company_id: str = "default") -> CompanyConfig:
    """The packaged defaults as a ``CompanyConfig``."""
    data = load_yaml_file(DEFAULTS_PATH).get("defaults") or {}
    return parse_company(company_id, data)


class ConfigRegistry:
    """Company id -> ``CompanyConfig``."""

    def __init__(
        self,
        companies: dict[str, CompanyConfig] | None = None,
        default: CompanyConfig | None = None,
    ):
        self._companies = dict(companies or {})
        self._default = default or CompanyConfig()
        self._lock = threading.Lock()

    @classmethod
    def from_file(cls, path: Path | str) -> ConfigRegistry:
        defaults, companies = load_config(path)
        registry = cls(companies, parse_company("default", defaults))
        logger.info(
            "DOCLEDGER_CONFIG_TRACE",
            extra={
                "trace_type": "DOCLEDGER_CONFIG_TRACE",
                "path": str(path),
                "company_count": len(companies),
                "checksums": {cid: cfg.checksum for cid, cfg in companies.items()},
                "default_checksum": registry._default.checksum,
            },
        )
        return registry

    def register(self, config: CompanyConfig) -> None:
        with self._lock:
            self._companies[config.company_id] = config

    def for_company(self, company_id: str) -> CompanyConfig:
        with self._lock:
            config = self._companies.get(company_id)
        if config is not None:
            return config
        return replace(self._default, company_id=company_id)

    def __call__(self, company_id: str) -> CompanyConfig:
        return self.for_company(company_id)

    def __contains__(self, company_id: str) -> bool:
        return company_id in self._companies
