"""
Redis Stream Layout

The inbound stream feeds the worker through one consumer group; the dead
letter stream has no group and is drained by hand with the CLI.
"""

import logging
from dataclasses import dataclass

import redis

logger = logging.getLogger(__name__)

INBOUND_STREAM = "wa:sessions:inbound"
DLQ_STREAM = "wa:sessions:dlq"

WHATSAPP_GROUP = "whatsapp-sessions"


@dataclass(frozen=True)
class StreamConfig:
    """A stream, its trim limit and, when consumed by workers, its group."""

    stream_name: str
    max_len: int
    group_name: str | None = None
    start_id: str = "0"  # "0" = all history, "$" = new only


STREAM_CONFIGS = {
    INBOUND_STREAM: StreamConfig(INBOUND_STREAM, max_len=100000, group_name=WHATSAPP_GROUP),
    DLQ_STREAM: StreamConfig(DLQ_STREAM, max_len=10000),
}


def stream_max_len(stream_name: str) -> int:
    """Approximate MAXLEN applied when publishing to `stream_name`."""
    return STREAM_CONFIGS[stream_name].max_len


def ensure_stream_group(
    client: redis.Redis,
    stream_name: str,
    group_name: str,
    start_id: str = "0",
) -> bool:
    """
    Create the consumer group (and the stream) unless it exists.

    Returns:
        True if the group was created
    """
    try:
        client.xgroup_create(stream_name, group_name, id=start_id, mkstream=True)
    except redis.ResponseError as e:
        if "BUSYGROUP" in str(e):
            return False
        raise
    logger.info(f"Created consumer group '{group_name}' on '{stream_name}'")
    return True


def ensure_whatsapp_streams(client: redis.Redis) -> None:
    """Create every consumer group the services read from. Idempotent."""
    for config in STREAM_CONFIGS.values():
        if config.group_name:
            ensure_stream_group(client, config.stream_name, config.group_name, config.start_id)


def get_stream_info(client: redis.Redis, stream_name: str) -> dict:
    """Length, bounds and consumer groups of a stream."""
    try:
        info = client.xinfo_stream(stream_name)
    except redis.ResponseError:
        return {"length": 0, "error": "Stream does not exist"}
    return {
        "length": info.get("length", 0),
        "max_len": STREAM_CONFIGS[stream_name].max_len if stream_name in STREAM_CONFIGS else None,
        "first_entry": info.get("first-entry"),
        "last_entry": info.get("last-entry"),
        "groups": client.xinfo_groups(stream_name),
    }
