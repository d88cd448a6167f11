from __future__ import annotations

import uuid
from datetime import date
from typing import Optional, cast

from fastapi import HTTPException, status

from app.schemas.connection import Environment


_ENVIRONMENT_ALIASES = {
    "sandbox": "sandbox",
    "prod": "prod",
    "production": "prod",
}


def parse_uuid(value: str, field_name: str = "identifier") -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid {field_name} format",
        ) from exc


def resolve_environment(
    value: Optional[str],
    default_env: Environment,
) -> Environment:
    if value is None:
        return default_env
    normalized = value.lower()
    resolved = _ENVIRONMENT_ALIASES.get(normalized)
    if resolved is None:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid environment value",
        )
    return cast(Environment, resolved)


def validate_date_range(start: date, end: date) -> None:
    if start > end:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="start_date must be on or before end_date",
        )
