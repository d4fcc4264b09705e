"""Small helpers shared across the engine."""

import re
from datetime import datetime, timezone
from typing import Any, Mapping


def utcnow_naive() -> datetime:
    """Current UTC time without tzinfo.

    All timestamp columns store naive UTC so comparisons behave the same
    on PostgreSQL and SQLite.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def snake_to_camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def camel_to_snake(name: str) -> str:
    return re.sub(r"(?<!^)(?=[A-Z])", "_", name).lower()


def config_value(config: Mapping[str, Any], key: str, default: Any = None) -> Any:
    """Read ``key`` from a node config in either snake_case or camelCase.

    The workflow builder has emitted both forms over time.
    """
    for candidate in (key, snake_to_camel(key), camel_to_snake(key)):
        if candidate in config:
            return config[candidate]
    return default


def calculate_offset(page: int = 1, per_page: int = 20) -> int:
    """Row offset for a 1-indexed page."""
    return (max(page, 1) - 1) * per_page
