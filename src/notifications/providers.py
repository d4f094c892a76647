from __future__ import annotations

import asyncio
import functools
import logging
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor

import firebase_admin
from firebase_admin import credentials, exceptions, messaging

from src.config import Settings
from src.models.notification import Envelope, SendOutcome

logger = logging.getLogger(__name__)

FIREBASE_APP_NAME = "push-fanout"


class BaseGatewayClient(ABC):
    name: str = "base"

    @abstractmethod
    async def send(self, envelope: Envelope) -> SendOutcome:
        raise NotImplementedError

    def close(self) -> None:
        return None


class MockGatewayClient(BaseGatewayClient):
    name = "mock"

    async def send(self, envelope: Envelope) -> SendOutcome:
        logger.debug("Mock gateway accepted envelope", extra={"token_prefix": envelope.token[:8]})
        return SendOutcome.delivered(message_id=f"mock-{envelope.token[:8]}")


def classify_fcm_error(exc: Exception) -> SendOutcome:
    """Map a firebase-admin error to a send outcome.

    Only "unregistered" and "invalid registration token" are permanent. Anything
    else, including sender-id mismatch and quota errors, must stay transient so the
    token is kept.
    """
    if isinstance(exc, messaging.UnregisteredError):
        return SendOutcome.invalid_token("unregistered")
    if isinstance(exc, exceptions.InvalidArgumentError) and "registration token" in str(exc).lower():
        return SendOutcome.invalid_token("invalid_registration_token")
    if isinstance(exc, exceptions.FirebaseError):
        return SendOutcome.transient(f"{exc.code}:{exc}")
    return SendOutcome.transient(f"{type(exc).__name__}:{exc}")


class FCMGatewayClient(BaseGatewayClient):
    """Sends one FCM message per envelope on a dedicated thread pool.

    The per-send deadline is the Firebase app's ``httpTimeout``, so it bounds the
    HTTP call itself rather than time spent queued behind sibling sends.
    """

    name = "fcm"

    def __init__(self, app: firebase_admin.App, max_workers: int = 500) -> None:
        self.app = app
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="fcm-send")

    @staticmethod
    def build_message(envelope: Envelope) -> messaging.Message:
        return messaging.Message(
            token=envelope.token,
            notification=messaging.Notification(title=envelope.title, body=envelope.body),
            data=dict(envelope.data),
        )

    async def send(self, envelope: Envelope) -> SendOutcome:
        message = self.build_message(envelope)
        loop = asyncio.get_running_loop()
        try:
            message_id = await loop.run_in_executor(
                self._executor,
                functools.partial(messaging.send, message, app=self.app),
            )
        except Exception as exc:
            outcome = classify_fcm_error(exc)
            logger.info(
                "FCM send failed",
                extra={"token_prefix": envelope.token[:8], "status": outcome.status.value, "reason": outcome.reason},
            )
            return outcome
        return SendOutcome.delivered(message_id=message_id)

    def close(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)


def _firebase_app(settings: Settings) -> firebase_admin.App:
    try:
        return firebase_admin.get_app(FIREBASE_APP_NAME)
    except ValueError:
        pass

    if settings.firebase_credentials_path:
        cred = credentials.Certificate(settings.firebase_credentials_path)
    else:
        if not settings.firebase_project_id or not settings.firebase_private_key:
            raise ValueError("firebase_credentials_incomplete")
        cred = credentials.Certificate(settings.firebase_service_account())
    app = firebase_admin.initialize_app(
        cred,
        {"httpTimeout": settings.gateway_send_timeout_seconds},
        name=FIREBASE_APP_NAME,
    )
    logger.info("Firebase app initialized", extra={"project_id": app.project_id})
    return app


def build_gateway_client(settings: Settings) -> BaseGatewayClient:
    if settings.notification_provider == "fcm":
        return FCMGatewayClient(_firebase_app(settings), max_workers=settings.gateway_batch_size)
    if settings.notification_provider != "mock":
        logger.warning(
            "Unknown notification provider, falling back to mock",
            extra={"provider": settings.notification_provider},
        )
    return MockGatewayClient()
