from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable
from datetime import datetime
from typing import TypeVar

from sqlalchemy import delete, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from src.models.notification import DeviceTokenRecord
from src.models.tables import DeviceToken
from src.notifications.errors import StoreUnavailableError
from src.utils.batching import batch
from src.utils.time import utc_now

logger = logging.getLogger(__name__)

R = TypeVar("R")
Clock = Callable[[], datetime]

USER_LOOKUP_CHUNK_SIZE = 500


class TokenStore(ABC):
    """Maps user ids to their set of device tokens, unique by token."""

    @abstractmethod
    async def add_token(self, user_id: str, token: str, device: str | None = None) -> None:
        raise NotImplementedError

    @abstractmethod
    async def get_tokens(self, user_id: str) -> list[DeviceTokenRecord]:
        raise NotImplementedError

    @abstractmethod
    async def get_tokens_for_many(self, user_ids: Iterable[str]) -> dict[str, list[DeviceTokenRecord]]:
        raise NotImplementedError

    @abstractmethod
    async def remove_token(self, user_id: str, token: str) -> None:
        raise NotImplementedError

    @abstractmethod
    async def remove_token_everywhere(self, token: str) -> None:
        raise NotImplementedError


class InMemoryTokenStore(TokenStore):
    """Process-local store. Each mutation runs without awaiting, so it is atomic on the event loop."""

    def __init__(self, clock: Clock = utc_now) -> None:
        self._clock = clock
        self._tokens: dict[str, dict[str, DeviceTokenRecord]] = {}

    async def add_token(self, user_id: str, token: str, device: str | None = None) -> None:
        records = self._tokens.setdefault(user_id, {})
        existing = records.get(token)
        # Re-registration keeps the original insertion position.
        records[token] = DeviceTokenRecord(
            token=token,
            device=device if device is not None or existing is None else existing.device,
            last_used=self._clock(),
        )

    async def get_tokens(self, user_id: str) -> list[DeviceTokenRecord]:
        return list(self._tokens.get(user_id, {}).values())

    async def get_tokens_for_many(self, user_ids: Iterable[str]) -> dict[str, list[DeviceTokenRecord]]:
        result: dict[str, list[DeviceTokenRecord]] = {}
        for user_id in user_ids:
            records = self._tokens.get(user_id)
            if records:
                result[user_id] = list(records.values())
        return result

    async def remove_token(self, user_id: str, token: str) -> None:
        self._discard(user_id, token)

    async def remove_token_everywhere(self, token: str) -> None:
        for user_id in list(self._tokens):
            self._discard(user_id, token)

    def _discard(self, user_id: str, token: str) -> None:
        records = self._tokens.get(user_id)
        if not records:
            return
        records.pop(token, None)
        if not records:
            self._tokens.pop(user_id, None)


class SqlTokenStore(TokenStore):
    """Token store backed by the ``device_tokens`` table.

    Every mutation is one statement: registration is an
    ``INSERT ... ON CONFLICT DO UPDATE`` on ``(user_id, token)`` and pruning is a
    single ``DELETE``, so concurrent add/remove calls for the same user cannot
    lose updates or duplicate rows. Blocking DB work runs in a worker thread.
    """

    def __init__(self, session_factory: sessionmaker, clock: Clock = utc_now) -> None:
        self.session_factory = session_factory
        self._clock = clock

    async def add_token(self, user_id: str, token: str, device: str | None = None) -> None:
        await self._run(self._add_token, user_id, token, device)

    async def get_tokens(self, user_id: str) -> list[DeviceTokenRecord]:
        grouped = await self._run(self._select_tokens, [user_id])
        return grouped.get(user_id, [])

    async def get_tokens_for_many(self, user_ids: Iterable[str]) -> dict[str, list[DeviceTokenRecord]]:
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return {}
        return await self._run(self._select_tokens, ids)

    async def remove_token(self, user_id: str, token: str) -> None:
        await self._run(self._delete, user_id, token)

    async def remove_token_everywhere(self, token: str) -> None:
        await self._run(self._delete, None, token)

    async def _run(self, fn: Callable[..., R], *args) -> R:
        return await asyncio.to_thread(self._in_session, fn, *args)

    def _in_session(self, fn: Callable[..., R], *args) -> R:
        try:
            with self.session_factory() as db:
                with db.begin():
                    return fn(db, *args)
        except SQLAlchemyError as exc:
            logger.error("Token store operation failed", extra={"operation": fn.__name__, "error": str(exc)})
            raise StoreUnavailableError(str(exc)) from exc

    def _add_token(self, db: Session, user_id: str, token: str, device: str | None) -> None:
        now = self._clock()
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            stmt = postgresql.insert(DeviceToken)
        elif dialect == "sqlite":
            stmt = sqlite.insert(DeviceToken)
        else:
            raise StoreUnavailableError(f"Unsupported database dialect: {dialect}")

        stmt = stmt.values(user_id=user_id, token=token, device=device, last_used=now, created_at=now)
        update_set = {"last_used": stmt.excluded.last_used}
        if device is not None:
            update_set["device"] = stmt.excluded.device
        db.execute(stmt.on_conflict_do_update(index_elements=["user_id", "token"], set_=update_set))

    @staticmethod
    def _select_tokens(db: Session, user_ids: list[str]) -> dict[str, list[DeviceTokenRecord]]:
        grouped: dict[str, list[DeviceTokenRecord]] = {}
        # Bounded IN lists keep SQLite under its bound-parameter limit.
        for chunk in batch(user_ids, USER_LOOKUP_CHUNK_SIZE):
            stmt = (
                select(DeviceToken)
                .where(DeviceToken.user_id.in_(chunk))
                .order_by(DeviceToken.user_id, DeviceToken.created_at, DeviceToken.id)
            )
            for row in db.execute(stmt).scalars():
                grouped.setdefault(row.user_id, []).append(
                    DeviceTokenRecord(token=row.token, device=row.device, last_used=row.last_used)
                )
        return grouped

    @staticmethod
    def _delete(db: Session, user_id: str | None, token: str) -> None:
        stmt = delete(DeviceToken).where(DeviceToken.token == token)
        if user_id is not None:
            stmt = stmt.where(DeviceToken.user_id == user_id)
        db.execute(stmt)
