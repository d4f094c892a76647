from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from src.config import get_settings
from src.models.notification import DispatchOutcome, Envelope, NotificationRequest, SendOutcome, SendStatus
from src.notifications.errors import NoTokensFoundError
from src.notifications.providers import BaseGatewayClient
from src.storage.repository import TokenStore
from src.utils.batching import batch

logger = logging.getLogger(__name__)

PruneFn = Callable[[str], Awaitable[None]]


class NotificationService:
    """Fans a notification out to every device token of one or many users.

    Tokens are resolved from the store, sent in gateway-sized batches (sends
    inside a batch run concurrently, batches run one after another) and tokens
    the gateway reports as invalid are pruned before the next batch starts.
    """

    def __init__(self, store: TokenStore, gateway: BaseGatewayClient, batch_size: int | None = None) -> None:
        size = batch_size if batch_size is not None else get_settings().gateway_batch_size
        if size < 1:
            raise ValueError("batch_size must be >= 1")
        self.store = store
        self.gateway = gateway
        self.batch_size = size

    async def dispatch_to_user(self, user_id: str, request: NotificationRequest) -> DispatchOutcome:
        records = await self.store.get_tokens(user_id)
        if not records:
            raise NoTokensFoundError([user_id])

        envelopes = [Envelope.for_token(record.token, request) for record in records]

        async def prune(token: str) -> None:
            await self.store.remove_token(user_id, token)

        outcome = await self._deliver(envelopes, prune)
        logger.info("Dispatched notification to user", extra={"user_id": user_id, **outcome.model_dump()})
        return outcome

    async def dispatch_to_users(self, user_ids: list[str], request: NotificationRequest) -> DispatchOutcome:
        unique_ids = list(dict.fromkeys(user_ids))
        if not unique_ids:
            raise NoTokensFoundError([])

        tokens_by_user = await self.store.get_tokens_for_many(unique_ids)
        if not tokens_by_user:
            raise NoTokensFoundError(unique_ids)

        # A token shared by two users is sent (and pruned) once.
        seen: set[str] = set()
        envelopes: list[Envelope] = []
        for user_id in unique_ids:
            for record in tokens_by_user.get(user_id, []):
                if record.token in seen:
                    continue
                seen.add(record.token)
                envelopes.append(Envelope.for_token(record.token, request))

        if not envelopes:
            raise NoTokensFoundError(unique_ids)

        outcome = await self._deliver(envelopes, self.store.remove_token_everywhere)
        logger.info(
            "Dispatched bulk notification",
            extra={"users": len(unique_ids), "resolved_users": len(tokens_by_user), **outcome.model_dump()},
        )
        return outcome

    async def _deliver(self, envelopes: list[Envelope], prune: PruneFn) -> DispatchOutcome:
        outcome = DispatchOutcome()
        for index, group in enumerate(batch(envelopes, self.batch_size)):
            results = await asyncio.gather(*(self._send_one(envelope, prune) for envelope in group))
            delivered = sum(1 for result in results if result.status is SendStatus.DELIVERED)
            outcome.attempted += len(results)
            outcome.delivered += delivered
            outcome.failed += len(results) - delivered
            logger.debug(
                "Gateway batch completed",
                extra={"batch": index, "size": len(group), "delivered": delivered},
            )
        return outcome

    async def _send_one(self, envelope: Envelope, prune: PruneFn) -> SendOutcome:
        try:
            result = await self.gateway.send(envelope)
        except Exception as exc:
            logger.warning(
                "Gateway send raised",
                extra={"token_prefix": envelope.token[:8], "error": str(exc)},
            )
            return SendOutcome.transient(f"{type(exc).__name__}:{exc}")

        if result.status is SendStatus.INVALID_TOKEN:
            await self._prune(envelope.token, prune)
        return result

    @staticmethod
    async def _prune(token: str, prune: PruneFn) -> None:
        try:
            await prune(token)
            logger.info("Pruned invalid device token", extra={"token_prefix": token[:8]})
        except Exception as exc:
            logger.exception("Failed to prune invalid device token", extra={"token_prefix": token[:8], "error": str(exc)})
