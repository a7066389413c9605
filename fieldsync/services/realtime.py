"""
Realtime broadcast channel via Redis pub/sub.

Every message is published to the channel for live subscribers and also
pushed to a bounded Redis list so late subscribers can catch up.

Channels: jobs, companies, job_activities, attachments.
Event name: webhook_update.
"""
import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fieldsync.schemas.servicem8 import WebhookObjectType
from fieldsync.utils.redis import KEY_PREFIX, get_redis

logger = logging.getLogger(__name__)

UPDATE_EVENT = "webhook_update"
CATCHUP_LIST_MAX = 100

# Staff has no channel: staff changes surface through job activities.
CHANNELS: dict[WebhookObjectType, tuple[str, str]] = {
    WebhookObjectType.JOB: ("jobs", "job_update"),
    WebhookObjectType.COMPANY: ("companies", "company_update"),
    WebhookObjectType.JOB_ACTIVITY: ("job_activities", "activity_update"),
    WebhookObjectType.ATTACHMENT: ("attachments", "attachment_update"),
}


def channel_key(channel: str) -> str:
    return f"{KEY_PREFIX}:realtime:{channel}"


def build_update(
    object_type: WebhookObjectType,
    object_uuid: str,
    event_type: str,
    changes: Optional[dict[str, Any]] = None,
    timestamp: Optional[str] = None,
) -> Optional[tuple[str, dict]]:
    """
    (channel, payload) for an entity change, or None if the type has no channel.
    The timestamp is the one ServiceM8 sent with the event, else now.
    """
    route = CHANNELS.get(object_type)
    if route is None:
        return None
    channel, update_type = route
    return channel, {
        "type": update_type,
        "object_uuid": object_uuid,
        "event_type": event_type,
        "changes": changes or {},
        "timestamp": timestamp or datetime.now(timezone.utc).isoformat(),
    }


class RedisBroadcaster:
    """Publishes {channel, event, payload} messages. Raises on Redis failure."""

    async def broadcast(self, channel: str, event: str, payload: dict) -> None:
        message = json.dumps({"channel": channel, "event": event, "payload": payload}, default=str)
        redis = await get_redis()
        key = channel_key(channel)
        await redis.publish(key, message)
        await redis.lpush(f"{key}:recent", message)
        await redis.ltrim(f"{key}:recent", 0, CATCHUP_LIST_MAX - 1)
        logger.debug("Broadcast %s on %s", event, channel)


async def recent_updates(channel: str, limit: int = 20) -> list[dict]:
    """Most recent broadcasts on a channel, newest first."""
    redis = await get_redis()
    raw_items = await redis.lrange(f"{channel_key(channel)}:recent", 0, limit - 1)
    updates = []
    for raw in raw_items:
        try:
            updates.append(json.loads(raw))
        except (json.JSONDecodeError, TypeError):
            continue
    return updates
