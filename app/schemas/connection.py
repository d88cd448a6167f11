from __future__ import annotations

import uuid
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel


Environment = Literal["sandbox", "prod"]
AccessStatus = Literal["valid", "expired", "none"]


class ConnectionRead(BaseModel):
    id: uuid.UUID
    realm_id: str
    environment: Environment
    access_expires_at: Optional[datetime]
    refresh_expires_at: Optional[datetime]
    scopes: list[str] | None = None
    refresh_counter: int
    last_error: Optional[str] = None
    last_error_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class ConnectionStatus(BaseModel):
    connected: bool
    environment: Environment
    access_status: AccessStatus
    connection: Optional[ConnectionRead] = None


class OAuthCallbackResponse(BaseModel):
    message: str
    realm_id: str
    environment: Environment
    connection: ConnectionRead


class TokenRefreshSummary(BaseModel):
    checked: int
    refreshed: int
    failed: int
