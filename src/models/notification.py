from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class DeviceTokenRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    token: str
    device: str | None = None
    last_used: datetime


class NotificationRequest(BaseModel):
    title: str
    body: str
    data: dict[str, str] = Field(default_factory=dict)


@dataclass(frozen=True)
class Envelope:
    token: str
    title: str
    body: str
    data: dict[str, str] = field(default_factory=dict)

    @classmethod
    def for_token(cls, token: str, request: NotificationRequest) -> "Envelope":
        return cls(token=token, title=request.title, body=request.body, data=dict(request.data))


class SendStatus(str, Enum):
    DELIVERED = "delivered"
    TRANSIENT_FAILURE = "transient_failure"
    INVALID_TOKEN = "invalid_token"


@dataclass(frozen=True)
class SendOutcome:
    status: SendStatus
    reason: str | None = None
    message_id: str | None = None

    @classmethod
    def delivered(cls, message_id: str | None = None) -> "SendOutcome":
        return cls(status=SendStatus.DELIVERED, message_id=message_id)

    @classmethod
    def transient(cls, reason: str) -> "SendOutcome":
        return cls(status=SendStatus.TRANSIENT_FAILURE, reason=reason)

    @classmethod
    def invalid_token(cls, reason: str | None = None) -> "SendOutcome":
        return cls(status=SendStatus.INVALID_TOKEN, reason=reason)


class DispatchOutcome(BaseModel):
    attempted: int = 0
    delivered: int = 0
    failed: int = 0


# API schemas. Field aliases accept the camelCase bodies mobile clients send.


class TokenRegistrationRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    fcm_token: str = Field(alias="fcmToken", min_length=1)
    device_info: str | None = Field(default=None, alias="deviceInfo")


class RegistrationResponse(BaseModel):
    success: bool
    message: str


class SendNotificationRequest(NotificationRequest):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


class SendBulkNotificationRequest(NotificationRequest):
    model_config = ConfigDict(populate_by_name=True)

    user_ids: list[str] = Field(alias="userIds")


class DispatchResponse(BaseModel):
    success: bool
    message: str
    attempted: int
    delivered: int
    failed: int
