import uuid
from typing import Any

from pydantic import BaseModel, Field

from portal.schemas.base import CamelModel


class PushKeys(BaseModel):
    p256dh: str
    auth: str


class PushSubscribeRequest(BaseModel):
    endpoint: str
    keys: PushKeys


class PushUnsubscribeRequest(BaseModel):
    endpoint: str


class VapidPublicKeyOut(CamelModel):
    public_key: str


class PushSubscribeOut(CamelModel):
    success: bool = True
    subscription_id: uuid.UUID


class PushUnsubscribeOut(CamelModel):
    success: bool = True
    removed: bool


class DirectPushRequest(CamelModel):
    user_id: uuid.UUID
    title: str = Field(min_length=1, max_length=255)
    body: str = Field(min_length=1)
    data: dict[str, Any] | None = None


class DirectPushResult(CamelModel):
    endpoint: str
    status: str
    attempts: int
    status_code: int | None = None
    error: str | None = None


class DirectPushOut(CamelModel):
    success: bool = True
    sent: int
    failed: int
    results: list[DirectPushResult]
