from __future__ import annotations


class NotificationError(Exception):
    """Base error for the push fan-out service."""


class StoreUnavailableError(NotificationError):
    """The token store could not serve the request."""


class NoTokensFoundError(NotificationError):
    def __init__(self, user_ids: list[str]) -> None:
        self.user_ids = list(user_ids)
        super().__init__(f"No tokens found for users: {self.user_ids}")
