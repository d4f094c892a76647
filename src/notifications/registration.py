from __future__ import annotations

import logging

from src.models.notification import DeviceTokenRecord
from src.storage.repository import TokenStore

logger = logging.getLogger(__name__)


class RegistrationService:
    def __init__(self, store: TokenStore) -> None:
        self.store = store

    async def register(self, user_id: str, token: str, device: str | None = None) -> None:
        await self.store.add_token(user_id, token, device)
        logger.info("Device token registered", extra={"user_id": user_id, "device": device})

    async def list_devices(self, user_id: str) -> list[DeviceTokenRecord]:
        return await self.store.get_tokens(user_id)

    async def unregister(self, user_id: str, token: str) -> None:
        await self.store.remove_token(user_id, token)
        logger.info("Device token unregistered", extra={"user_id": user_id})
