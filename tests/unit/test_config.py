from __future__ import annotations

import pytest

from src.config import Settings


@pytest.mark.parametrize("batch_size", [0, -5])
def test_non_positive_batch_size_is_rejected(batch_size: int) -> None:
    with pytest.raises(ValueError, match="GATEWAY_BATCH_SIZE"):
        Settings(gateway_batch_size=batch_size)


def test_non_positive_send_timeout_is_rejected() -> None:
    with pytest.raises(ValueError, match="GATEWAY_SEND_TIMEOUT_SECONDS"):
        Settings(gateway_send_timeout_seconds=0)


def test_defaults_are_valid() -> None:
    config = Settings(gateway_batch_size=500, gateway_send_timeout_seconds=10)

    assert config.gateway_batch_size == 500
    assert config.gateway_send_timeout_seconds == 10
