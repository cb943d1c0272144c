"""
api.py — Live status detection for live_watcher
"""

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Optional, Union

import aiohttp

# Setup logging
logger = logging.getLogger("live_watcher")

SIGN_URL = "https://tikrec.com/tiktok/room/api/sign"
CHECK_ALIVE_URL = "https://webcast.tiktok.com/webcast/room/check_alive/"
USER_NOT_FOUND = "user_not_found"


@dataclass(frozen=True)
class Live:
    room_id: Optional[str]


@dataclass(frozen=True)
class NotLive:
    pass


@dataclass(frozen=True)
class Indeterminate:
    reason: str


LiveStatus = Union[Live, NotLive, Indeterminate]


class StatusFormatError(Exception):
    """Raised when an upstream response does not have the expected shape."""


def _is_user_not_found(body: Any) -> bool:
    if not isinstance(body, dict):
        return False
    message = body.get("message")
    return isinstance(message, str) and message.lower() == USER_NOT_FOUND


def _parse_alive(body: Any) -> bool:
    """Extract ``data[0].alive`` from a check_alive response."""
    if not isinstance(body, dict):
        raise StatusFormatError("check_alive response is not an object")
    data = body.get("data")
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        raise StatusFormatError(f"check_alive response has no room data: {body!r}")
    if "alive" not in data[0]:
        raise StatusFormatError(f"check_alive room data has no 'alive' field: {data[0]!r}")
    return str(data[0]["alive"]).strip().lower() == "true"


def _parse_room_id(body: Any) -> Optional[str]:
    """Extract ``data.user.roomId``, returning None when any level is absent."""
    if not isinstance(body, dict):
        return None
    data = body.get("data")
    user = data.get("user") if isinstance(data, dict) else None
    room_id = user.get("roomId") if isinstance(user, dict) else None
    if room_id is None or room_id == "":
        return None
    return str(room_id)


class LiveDetector:
    """Checks whether a channel is live using the three step upstream protocol.

    1. Ask the signing endpoint for a signed lookup URL for the channel
    2. Fetch the signed URL to learn the channel's room id
    3. Ask the room liveness endpoint whether that room is alive

    The detector holds no state between calls and never retries; a failed
    check is reported as Indeterminate and simply waits for the next poll.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        channel: str,
        log: Optional[logging.Logger] = None,
    ):
        self.session = session
        self.channel = channel
        self.logger = log or logger

    async def _get_json(self, url: str, params: Optional[dict] = None) -> Any:
        async with self.session.get(url, params=params) as response:
            response.raise_for_status()
            text = await response.text()
        return json.loads(text)

    async def check(self) -> LiveStatus:
        """Run the live status protocol once.

        Returns:
            Live with the room id if the room is alive, NotLive if it is not,
            or Indeterminate with a reason if any step failed
        """
        step = "sign"
        try:
            signed = await self._get_json(SIGN_URL, params={"unique_id": self.channel})
            if _is_user_not_found(signed):
                return Indeterminate(USER_NOT_FOUND)
            signed_url = signed.get("signed_url") if isinstance(signed, dict) else None
            if not isinstance(signed_url, str) or not signed_url:
                raise StatusFormatError(f"sign response has no 'signed_url': {signed!r}")

            step = "user"
            user_info = await self._get_json(signed_url)
            if _is_user_not_found(user_info):
                return Indeterminate(USER_NOT_FOUND)
            room_id = _parse_room_id(user_info)

            step = "check_alive"
            # An empty room id is tolerated upstream and reported as not alive
            alive_info = await self._get_json(
                CHECK_ALIVE_URL,
                params={
                    "aid": "1988",
                    "region": "CH",
                    "room_ids": room_id or "",
                    "user_is_login": "true",
                },
            )
            if _parse_alive(alive_info):
                return Live(room_id)
            return NotLive()
        except asyncio.TimeoutError:
            reason = f"{step}: request timed out"
        except aiohttp.ClientResponseError as e:
            reason = f"{step}: HTTP {e.status} {e.message}"
        except aiohttp.ClientError as e:
            reason = f"{step}: {type(e).__name__}: {e}"
        except json.JSONDecodeError as e:
            reason = f"{step}: invalid JSON: {e}"
        except (StatusFormatError, UnicodeDecodeError) as e:
            reason = f"{step}: {e}"
        self.logger.debug(f"{self.channel}: live status indeterminate ({reason})")
        return Indeterminate(reason)
