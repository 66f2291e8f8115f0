"""Balance change fan-out over Redis pub/sub.

Every committed ledger change is published on ``profile-credits-<user_id>`` so
connected clients can update their displayed balance without polling.
"""
import json
import logging
from typing import AsyncIterator

from ..db import get_async_redis, get_redis

logger = logging.getLogger(__name__)


def balance_channel(user_id) -> str:
    return f"profile-credits-{user_id}"


def publish_balance(user_id, credit_balance: int) -> bool:
    """Publish a balance update. Returns False when Redis is unavailable."""
    message = json.dumps({"user_id": str(user_id), "credit_balance": credit_balance})
    try:
        get_redis().publish(balance_channel(user_id), message)
    except Exception as e:
        logger.warning(f"Balance update for {user_id} not published: {e}")
        return False
    return True


async def stream_balance_events(user_id, initial_balance: int, request=None,
                                poll_seconds: float = 1.0) -> AsyncIterator[str]:
    """Yield server-sent events: the current balance, then each published change.

    Stops once ``request`` reports the client gone. The subscription is closed
    however the stream ends.
    """
    pubsub = get_async_redis().pubsub()
    await pubsub.subscribe(balance_channel(user_id))
    try:
        yield f"data: {json.dumps({'user_id': str(user_id), 'credit_balance': initial_balance})}\n\n"
        while True:
            if request is not None and await request.is_disconnected():
                logger.debug(f"Balance stream for {user_id} closed by client")
                break
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=poll_seconds)
            if message is None:
                continue
            yield f"data: {message['data']}\n\n"
    finally:
        await pubsub.aclose()
