# storefront/runtime/site_config.py
from __future__ import annotations

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import yaml

from storefront.runtime.models import PermissionSet

logger = logging.getLogger(__name__)

_SITE_ID = re.compile(r"[\w-]+")


def is_valid_site_id(site_id: str) -> bool:
    return bool(site_id) and bool(_SITE_ID.fullmatch(site_id))


@dataclass
class SiteConfig:
    site_id: str
    name: str = ""
    permissions: PermissionSet = field(default_factory=PermissionSet)
    custom_instructions: str = ""
    language: Optional[str] = None

    @staticmethod
    def from_dict(data: Dict[str, Any], site_id: Optional[str] = None) -> "SiteConfig":
        return SiteConfig(
            site_id=str(data.get("site_id") or data.get("id") or site_id or "default"),
            name=str(data.get("name", "")),
            permissions=PermissionSet.from_dict(data.get("permissions")),
            custom_instructions=str(data.get("custom_instructions") or data.get("customInstructions") or ""),
            language=data.get("language"),
        )

    @staticmethod
    def load(path: str | Path) -> "SiteConfig":
        """Load a site config from YAML (.yaml/.yml) or JSON."""
        p = Path(path)
        text = p.read_text(encoding="utf-8")
        data = json.loads(text) if p.suffix == ".json" else yaml.safe_load(text)
        if not isinstance(data, dict):
            raise ValueError(f"site config must be a mapping: {p}")
        return SiteConfig.from_dict(data, site_id=p.stem)


class SiteConfigStore(Protocol):
    def get(self, site_id: str) -> SiteConfig: ...


class DictSiteConfigStore:
    """In-memory store; unknown sites get the restrictive defaults."""

    def __init__(self, configs: Optional[Dict[str, SiteConfig]] = None) -> None:
        self._configs: Dict[str, SiteConfig] = dict(configs or {})

    def put(self, config: SiteConfig) -> None:
        self._configs[config.site_id] = config

    def get(self, site_id: str) -> SiteConfig:
        return self._configs.get(site_id) or SiteConfig(site_id=site_id)


class YamlSiteConfigStore:
    """Reads <config_dir>/<site_id>.yaml (or .yml / .json) on every lookup."""

    def __init__(self, config_dir: str | Path | None = None) -> None:
        self.config_dir = Path(config_dir or os.getenv("SA_SITE_CONFIG_DIR", "config/sites"))

    def get(self, site_id: str) -> SiteConfig:
        if not is_valid_site_id(site_id):
            raise ValueError(f"invalid site id: {site_id!r}")
        for suffix in (".yaml", ".yml", ".json"):
            path = self.config_dir / f"{site_id}{suffix}"
            if path.exists():
                return SiteConfig.load(path)
        logger.warning("[CONFIG] no config for site %s in %s, using defaults", site_id, self.config_dir)
        return SiteConfig(site_id=site_id)
