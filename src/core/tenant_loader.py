"""Tenant loader for tenant YAML files.

Each tenant is defined by config/tenants/{tenant_id}.yaml: constants,
instructions template, tool handlers, action sequences, forms, buttons and
external collaborators. Configurations are validated into TenantConfig and
cached after first load; they never change at runtime.
"""

import re
from pathlib import Path
from typing import Dict, List, Optional

import structlog
import yaml
from pydantic import ValidationError as PydanticValidationError

from src.core.config import settings
from src.core.exceptions import ConfigurationError, TenantNotFoundError
from src.domain.models.tenant import TenantConfig

log = structlog.get_logger(__name__)

TENANT_ID_RE = re.compile(r"^[a-z0-9][a-z0-9_-]{0,63}$")

# Module-level cache (tenant configuration is read-only after startup)
_cache: Dict[str, TenantConfig] = {}


def _tenants_dir(tenants_dir: Optional[Path]) -> Path:
    return tenants_dir or settings.resolved_tenants_dir


def load_tenant_config(tenant_id: str, tenants_dir: Optional[Path] = None) -> TenantConfig:
    """Load tenant configuration from YAML file.

    Args:
        tenant_id: Tenant identifier, also the YAML file stem
        tenants_dir: Override config/tenants/ path (for testing)

    Returns:
        Validated TenantConfig

    Raises:
        TenantNotFoundError: Unknown tenant or malformed tenant id
        ConfigurationError: YAML is invalid or fails validation
    """
    if tenant_id in _cache:
        return _cache[tenant_id]

    if not TENANT_ID_RE.match(tenant_id):
        raise TenantNotFoundError(f"Invalid tenant id: {tenant_id!r}")

    path = _tenants_dir(tenants_dir) / f"{tenant_id}.yaml"
    if not path.exists():
        raise TenantNotFoundError(f"Tenant not found: {tenant_id}")

    try:
        with open(path) as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in {path}: {e}") from e

    data.setdefault("tenant_id", tenant_id)
    if data["tenant_id"] != tenant_id:
        raise ConfigurationError(
            f"{path} declares tenant_id '{data['tenant_id']}', expected '{tenant_id}'"
        )

    try:
        tenant = TenantConfig(**data)
    except PydanticValidationError as e:
        raise ConfigurationError(f"Invalid tenant config {tenant_id}: {e}") from e

    _cache[tenant_id] = tenant
    log.info(
        "tenant_loaded",
        tenant_id=tenant_id,
        tool_count=len(tenant.tools),
        sequence_count=len(tenant.action_sequences),
        form_count=len(tenant.forms),
    )
    return tenant


def list_tenants(tenants_dir: Optional[Path] = None) -> List[str]:
    """Tenant ids for every YAML file in the tenants directory."""
    directory = _tenants_dir(tenants_dir)
    if not directory.exists():
        return []
    return sorted(
        p.stem for p in directory.glob("*.yaml") if TENANT_ID_RE.match(p.stem)
    )


def clear_cache() -> None:
    _cache.clear()
