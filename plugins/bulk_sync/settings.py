"""
Runtime Settings

Environment-driven defaults for bulk operations. Values are read at call time
so a worker can change behavior without reloading the module. Explicit
arguments passed to the bulk operations always take precedence.

Environment variables:
- BULK_BATCH_SIZE: Rows per load batch (default 50000)
- BULK_COPY_TIMEOUT: Statement timeout in seconds (default: none)
- BULK_USE_PHYSICAL_STAGING: Use durable staging tables (default false)
- BULK_SCHEMA_CACHE: Reuse cached schema snapshots (default true)
- STRICT_CONSISTENCY: Disable NOLOCK reads of the target schema (default false)
"""

from dataclasses import dataclass
from typing import Optional
import os

DEFAULT_BATCH_SIZE = 50000

_TRUE_VALUES = ('true', '1', 'yes', 'on')


def _env_flag(name: str, default: bool) -> bool:
    val = os.environ.get(name)
    if val is None or val.strip() == '':
        return default
    return val.strip().lower() in _TRUE_VALUES


def _env_int(name: str) -> Optional[int]:
    val = os.environ.get(name, '').strip()
    if not val:
        return None
    return int(val)


@dataclass(frozen=True)
class BulkSettings:
    """Snapshot of the environment-driven defaults."""

    batch_size: int = DEFAULT_BATCH_SIZE
    timeout: Optional[int] = None
    use_physical_staging: bool = False
    schema_cache_enabled: bool = True
    strict_consistency: bool = False


def is_strict_consistency_mode() -> bool:
    """
    Check if strict consistency mode is enabled.

    When STRICT_CONSISTENCY=true, NOLOCK hints are disabled so the staging
    table is always created from a committed view of the target.

    Returns:
        True if strict consistency mode is enabled
    """
    return _env_flag('STRICT_CONSISTENCY', False)


def get_bulk_settings() -> BulkSettings:
    """
    Read bulk operation defaults from environment variables.

    Returns:
        BulkSettings with defaults applied for unset variables

    Raises:
        ValueError: If a numeric variable is not an integer
    """
    batch_size = _env_int('BULK_BATCH_SIZE') or DEFAULT_BATCH_SIZE
    timeout = _env_int('BULK_COPY_TIMEOUT')
    return BulkSettings(
        batch_size=max(1, batch_size),
        timeout=timeout if timeout and timeout > 0 else None,
        use_physical_staging=_env_flag('BULK_USE_PHYSICAL_STAGING', False),
        schema_cache_enabled=_env_flag('BULK_SCHEMA_CACHE', True),
        strict_consistency=is_strict_consistency_mode(),
    )
