"""Discord channel roles of game channels, as recorded in Redis.

Keys:

- ``discord_channels``: set of bot-controlled channel ids
- ``discord_channel:{id}:discord_role`` / ``discord_channel:{id}:discord_host_role``
- ``event_series:{id}:discord_channel``

Role changes go through :meth:`ChannelRoleStore.try_reconcile_channel_role`,
a compare-and-swap executed atomically inside Redis as a Lua script.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import dataclass

from redis.asyncio import Redis

from questline.errors import DataConflictError, ValidationError

logger = logging.getLogger(__name__)

CHANNELS_KEY = "discord_channels"

# KEYS[1] role key; ARGV[1] expected value ("" = unset); ARGV[2] new value ("" = delete)
_COMPARE_AND_SWAP = """
local current = redis.call('GET', KEYS[1])
if current == false then current = '' end
if current ~= ARGV[1] then
    return 0
end
if ARGV[2] == '' then
    redis.call('DEL', KEYS[1])
else
    redis.call('SET', KEYS[1], ARGV[2])
end
return 1
"""


class ChannelRoleKind(enum.StrEnum):
    USER = "discord_role"
    HOST = "discord_host_role"


@dataclass(frozen=True)
class ChannelRoles:
    user: int
    host: int


def role_key(channel_id: int, kind: ChannelRoleKind) -> str:
    return f"discord_channel:{channel_id}:{kind.value}"


def series_channel_key(event_series_id: int) -> str:
    return f"event_series:{event_series_id}:discord_channel"


def _as_int(value: bytes | str | None, key: str) -> int | None:
    if value is None:
        return None
    if isinstance(value, bytes):
        value = value.decode()
    try:
        return int(value)
    except ValueError as exc:
        raise ValidationError(f"Redis key {key} holds a non-numeric id {value!r}") from exc


class ChannelRoleStore:
    def __init__(self, redis: Redis) -> None:
        self._redis = redis
        self._cas = redis.register_script(_COMPARE_AND_SWAP)

    async def get_channel_roles(self, channel_id: int) -> ChannelRoles | None:
        """Roles of a game channel, or ``None`` for channels the bot does not control.

        Raises
        ------
        DataConflictError
            If only one of the two roles is recorded.
        """
        if not await self._redis.sismember(CHANNELS_KEY, str(channel_id)):
            return None
        user_key = role_key(channel_id, ChannelRoleKind.USER)
        host_key = role_key(channel_id, ChannelRoleKind.HOST)
        user_raw, host_raw = await self._redis.mget([user_key, host_key])
        user = _as_int(user_raw, user_key)
        host = _as_int(host_raw, host_key)
        if user is None and host is None:
            return None
        if user is None or host is None:
            raise DataConflictError(f"Channel {channel_id} has only one of two roles")
        return ChannelRoles(user=user, host=host)

    async def get_series_channel(self, event_series_id: int) -> int | None:
        key = series_channel_key(event_series_id)
        return _as_int(await self._redis.get(key), key)

    async def get_event_series_roles(self, event_series_id: int) -> ChannelRoles | None:
        channel_id = await self.get_series_channel(event_series_id)
        if channel_id is None:
            return None
        return await self.get_channel_roles(channel_id)

    async def try_reconcile_channel_role(
        self,
        channel_id: int,
        kind: ChannelRoleKind,
        expected: int | None,
        new: int | None,
    ) -> bool:
        """Set the role to *new* only if it currently equals *expected*.

        ``None`` stands for "not set" on both sides. Returns whether the swap
        happened; a ``False`` result means someone else changed the role first.
        """
        key = role_key(channel_id, kind)
        swapped = await self._cas(
            keys=[key],
            args=["" if expected is None else str(expected), "" if new is None else str(new)],
        )
        if not swapped:
            logger.info(
                "Role %s of channel %s changed concurrently; expected %s",
                kind,
                channel_id,
                expected,
            )
        return bool(swapped)
