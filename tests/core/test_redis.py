"""Tests for the Redis client wrapper."""
from unittest.mock import AsyncMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from core.redis import RedisClient, get_redis_client, set_redis_client


async def test__connect__disabled_client_is_not_connected() -> None:
    client = RedisClient("redis://localhost:6379", enabled=False)
    await client.connect()

    assert client.is_connected is False
    assert await client.ping() is False
    assert await client.publish("channel", "message") is False
    assert client.pubsub() is None


async def test__connect__failure_degrades_gracefully() -> None:
    broken = AsyncMock()
    broken.ping.side_effect = RedisConnectionError("refused")

    with patch("core.redis.Redis", return_value=broken):
        client = RedisClient("redis://localhost:6379")
        await client.connect()

    assert client.is_connected is False
    assert await client.publish("channel", "message") is False


async def test__publish__and_pubsub_roundtrip(redis_client: RedisClient) -> None:
    pubsub = redis_client.pubsub()
    assert pubsub is not None
    await pubsub.subscribe("greetings")
    try:
        assert await redis_client.publish("greetings", "hello") is True
        # The subscribe confirmation is consumed as None first
        message = None
        for _ in range(5):
            message = await pubsub.get_message(timeout=0.2)
            if message is not None:
                break
    finally:
        await pubsub.aclose()

    assert message is not None
    assert message["data"] == b"hello"


async def test__publish__redis_error_returns_false(redis_client: RedisClient) -> None:
    with patch.object(
        redis_client._client, "publish", side_effect=RedisConnectionError("gone"),
    ):
        assert await redis_client.publish("channel", "message") is False


async def test__ping__connected(redis_client: RedisClient) -> None:
    assert await redis_client.ping() is True


def test__global_client_state() -> None:
    client = RedisClient("redis://localhost:6379", enabled=False)
    set_redis_client(client)
    try:
        assert get_redis_client() is client
    finally:
        set_redis_client(None)
    assert get_redis_client() is None
