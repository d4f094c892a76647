from __future__ import annotations

import logging
from functools import lru_cache

from fastapi import APIRouter, Depends, HTTPException, Response

from src.config import settings
from src.models.db import SessionLocal
from src.models.notification import (
    DeviceTokenRecord,
    DispatchOutcome,
    DispatchResponse,
    RegistrationResponse,
    SendBulkNotificationRequest,
    SendNotificationRequest,
    TokenRegistrationRequest,
)
from src.notifications.errors import NoTokensFoundError, StoreUnavailableError
from src.notifications.providers import BaseGatewayClient, build_gateway_client
from src.notifications.registration import RegistrationService
from src.notifications.service import NotificationService
from src.storage.repository import InMemoryTokenStore, SqlTokenStore, TokenStore

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api", tags=["push-fanout"])


@lru_cache
def get_token_store() -> TokenStore:
    if settings.token_store == "memory":
        return InMemoryTokenStore()
    return SqlTokenStore(SessionLocal)


@lru_cache
def get_gateway_client() -> BaseGatewayClient:
    return build_gateway_client(settings)


def get_notification_service(
    store: TokenStore = Depends(get_token_store),
    gateway: BaseGatewayClient = Depends(get_gateway_client),
) -> NotificationService:
    return NotificationService(store, gateway, batch_size=settings.gateway_batch_size)


def get_registration_service(store: TokenStore = Depends(get_token_store)) -> RegistrationService:
    return RegistrationService(store)


def _dispatch_response(outcome: DispatchOutcome) -> DispatchResponse:
    return DispatchResponse(
        success=True,
        message=f"Successfully sent {outcome.delivered} notifications",
        **outcome.model_dump(),
    )


@router.get("/health")
def health() -> dict:
    return {"status": "ok"}


@router.post("/register-token", response_model=RegistrationResponse)
async def register_token(
    payload: TokenRegistrationRequest,
    service: RegistrationService = Depends(get_registration_service),
):
    try:
        await service.register(payload.user_id, payload.fcm_token, payload.device_info)
    except StoreUnavailableError as exc:
        logger.exception("Token registration failed", extra={"user_id": payload.user_id, "error": str(exc)})
        raise HTTPException(status_code=500, detail="Token registration failed") from exc
    return RegistrationResponse(success=True, message="Token registered successfully")


@router.post("/send-notification", response_model=DispatchResponse)
async def send_notification(
    payload: SendNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    try:
        outcome = await service.dispatch_to_user(payload.user_id, payload)
    except NoTokensFoundError as exc:
        raise HTTPException(status_code=404, detail="No tokens found for this user") from exc
    except StoreUnavailableError as exc:
        logger.exception("Notification dispatch failed", extra={"user_id": payload.user_id, "error": str(exc)})
        raise HTTPException(status_code=500, detail="Notification dispatch failed") from exc
    return _dispatch_response(outcome)


@router.post("/send-bulk-notification", response_model=DispatchResponse)
async def send_bulk_notification(
    payload: SendBulkNotificationRequest,
    service: NotificationService = Depends(get_notification_service),
):
    try:
        outcome = await service.dispatch_to_users(payload.user_ids, payload)
    except NoTokensFoundError as exc:
        raise HTTPException(status_code=404, detail="No tokens found for any users") from exc
    except StoreUnavailableError as exc:
        logger.exception("Bulk notification dispatch failed", extra={"users": len(payload.user_ids), "error": str(exc)})
        raise HTTPException(status_code=500, detail="Bulk notification dispatch failed") from exc
    return _dispatch_response(outcome)


@router.get("/users/{user_id}/tokens", response_model=list[DeviceTokenRecord])
async def list_user_tokens(user_id: str, service: RegistrationService = Depends(get_registration_service)):
    try:
        return await service.list_devices(user_id)
    except StoreUnavailableError as exc:
        logger.exception("Token lookup failed", extra={"user_id": user_id, "error": str(exc)})
        raise HTTPException(status_code=500, detail="Token lookup failed") from exc


@router.delete("/users/{user_id}/tokens/{token}", status_code=204)
async def unregister_user_token(
    user_id: str,
    token: str,
    service: RegistrationService = Depends(get_registration_service),
):
    try:
        await service.unregister(user_id, token)
    except StoreUnavailableError as exc:
        logger.exception("Token removal failed", extra={"user_id": user_id, "error": str(exc)})
        raise HTTPException(status_code=500, detail="Token removal failed") from exc
    return Response(status_code=204)
