"""
Settings and tenant resolution from the environment.

Three ways to declare tenants, highest precedence first:

    NEWO_CUSTOMER_<IDN>_API_KEY=...          one variable per tenant
    NEWO_CUSTOMER_<IDN>_PROJECT_ID=...       optional preferred project

    NEWO_API_KEYS='["key1", {"key": "key2", "project_id": "..."}]'
                                             tenants customer1, customer2, ...

    NEWO_API_KEY=...                         legacy single tenant "default"
    NEWO_PROJECT_ID=...

Whatever the encoding, callers get one ``TenantRegistry``.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Mapping, Optional
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field

from .errors import ConfigError
from .layout import STATE_DIRNAME
from .models import Tenant, TenantRegistry

logger = logging.getLogger("newosync.config")

DEFAULT_BASE_URL = "https://app.newo.ai"
CUSTOMER_PREFIX = "NEWO_CUSTOMER_"
API_KEY_SUFFIX = "_API_KEY"
PROJECT_ID_SUFFIX = "_PROJECT_ID"

_UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[1-5][0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)


class SyncSettings(BaseModel):
    """Process-wide settings shared by every tenant."""

    base_url: str = DEFAULT_BASE_URL
    refresh_url: Optional[str] = None
    root: Path = Field(default_factory=Path.cwd)
    concurrency: int = 4
    timeout: float = 30.0


def _is_url(value: str) -> bool:
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _clean(env: Mapping[str, str], key: str) -> Optional[str]:
    value = env.get(key)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _load_file_defaults(root: Path) -> dict:
    """Optional ``.newo/config.yaml`` with concurrency/timeout defaults."""
    config_file = root / STATE_DIRNAME / "config.yaml"
    if not config_file.exists():
        return {}
    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid {config_file}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"{config_file} must contain a mapping")
    return {k: data[k] for k in ("concurrency", "timeout") if k in data}


def _positive(name: str, raw, cast):
    try:
        value = cast(raw)
    except (TypeError, ValueError):
        raise ConfigError(f"{name} must be a number. Received: {raw}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive. Received: {raw}")
    return value


def load_settings(env: Optional[Mapping[str, str]] = None) -> SyncSettings:
    """Build ``SyncSettings`` from the environment.

    Raises:
        ConfigError: A URL or numeric setting is invalid.
    """
    env = os.environ if env is None else env

    base_url = (_clean(env, "NEWO_BASE_URL") or DEFAULT_BASE_URL).rstrip("/")
    if not _is_url(base_url):
        raise ConfigError(f"NEWO_BASE_URL must be a valid URL. Received: {base_url}")

    refresh_url = _clean(env, "NEWO_REFRESH_URL")
    if refresh_url and not _is_url(refresh_url):
        raise ConfigError(f"NEWO_REFRESH_URL must be a valid URL. Received: {refresh_url}")

    root = Path(_clean(env, "NEWO_HOME") or Path.cwd()).expanduser()
    values = _load_file_defaults(root)
    if _clean(env, "NEWO_CONCURRENCY"):
        values["concurrency"] = env["NEWO_CONCURRENCY"].strip()
    if _clean(env, "NEWO_TIMEOUT"):
        values["timeout"] = env["NEWO_TIMEOUT"].strip()

    return SyncSettings(
        base_url=base_url,
        refresh_url=refresh_url,
        root=root,
        concurrency=_positive("concurrency", values.get("concurrency", 4), int),
        timeout=_positive("timeout", values.get("timeout", 30.0), float),
    )


def _check_project_id(tenant_idn: str, project_id: Optional[str]) -> Optional[str]:
    if project_id and not _UUID_RE.match(project_id):
        raise ConfigError(
            f"Project id for customer '{tenant_idn}' must be a UUID. Received: {project_id}"
        )
    return project_id


def _per_tenant_variables(env: Mapping[str, str]) -> dict[str, Tenant]:
    tenants: dict[str, Tenant] = {}
    for key, value in env.items():
        if not (key.startswith(CUSTOMER_PREFIX) and key.endswith(API_KEY_SUFFIX)):
            continue
        raw_idn = key[len(CUSTOMER_PREFIX):-len(API_KEY_SUFFIX)]
        if not raw_idn:
            continue
        idn = raw_idn.lower()
        project_id = _clean(env, f"{CUSTOMER_PREFIX}{raw_idn}{PROJECT_ID_SUFFIX}")
        tenants[idn] = Tenant(
            idn=idn,
            api_key=(value or "").strip(),
            project_id=_check_project_id(idn, project_id),
        )
    return tenants


def _api_keys_list(raw: str) -> dict[str, Tenant]:
    try:
        entries = json.loads(raw)
    except json.JSONDecodeError as exc:
        raise ConfigError(f"NEWO_API_KEYS must be a JSON array: {exc}") from exc
    if not isinstance(entries, list):
        raise ConfigError("NEWO_API_KEYS must be a JSON array")

    tenants: dict[str, Tenant] = {}
    for index, entry in enumerate(entries, start=1):
        idn = f"customer{index}"
        if isinstance(entry, str):
            key, project_id = entry, None
        elif isinstance(entry, dict):
            key, project_id = entry.get("key") or "", entry.get("project_id")
        else:
            raise ConfigError(f"NEWO_API_KEYS entry {index} must be a string or object")
        tenants[idn] = Tenant(
            idn=idn,
            api_key=str(key).strip(),
            project_id=_check_project_id(idn, project_id),
        )
    return tenants


def resolve_tenants(env: Optional[Mapping[str, str]] = None) -> TenantRegistry:
    """Parse the environment into a validated ``TenantRegistry``.

    Raises:
        ConfigError: No tenants, a tenant with an empty secret, a malformed
            ``NEWO_API_KEYS`` value, or an unknown ``NEWO_DEFAULT_CUSTOMER``.
    """
    env = os.environ if env is None else env

    tenants = _per_tenant_variables(env)
    if tenants:
        source = "per-customer variables"
    elif _clean(env, "NEWO_API_KEYS"):
        tenants = _api_keys_list(env["NEWO_API_KEYS"])
        source = "NEWO_API_KEYS"
    elif _clean(env, "NEWO_API_KEY"):
        tenants = {
            "default": Tenant(
                idn="default",
                api_key=env["NEWO_API_KEY"].strip(),
                project_id=_check_project_id("default", _clean(env, "NEWO_PROJECT_ID")),
            )
        }
        source = "NEWO_API_KEY"
    else:
        source = "nothing"

    if not tenants:
        raise ConfigError(
            "No customers configured. Set NEWO_CUSTOMER_<IDN>_API_KEY, "
            "NEWO_API_KEYS or NEWO_API_KEY."
        )
    for idn, tenant in tenants.items():
        if not tenant.api_key:
            raise ConfigError(f"Customer '{idn}' has an empty API key")

    default = _clean(env, "NEWO_DEFAULT_CUSTOMER")
    if default:
        default = default.lower()
        if default not in tenants:
            raise ConfigError(
                f"NEWO_DEFAULT_CUSTOMER '{default}' is not configured. "
                f"Available: {', '.join(sorted(tenants))}"
            )
    elif len(tenants) == 1:
        default = next(iter(tenants))

    logger.debug("Resolved %d customer(s) from %s", len(tenants), source)
    return TenantRegistry(tenants=tenants, default=default)
