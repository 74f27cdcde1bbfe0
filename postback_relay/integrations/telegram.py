"""
Telegram Bot API transport (``sendMessage``) used for subscriber and operator
notifications.
"""
import asyncio
from typing import Any, Awaitable, Callable, Dict, Optional

import aiohttp

from postback_relay.config import (
    TELEGRAM_API_BASE,
    TELEGRAM_BACKOFF_POLICY,
    TELEGRAM_BOT_TOKEN,
    TELEGRAM_TIMEOUT_SECONDS,
)
from postback_relay.exceptions import TransportError
from postback_relay.utils import get_logger
from postback_relay.utils.backoff import compute_backoff_seconds

logger = get_logger(__name__)


def _retry_after(data: Any) -> Optional[float]:
    """``parameters.retry_after`` from a Bot API 429 body, if present."""
    if not isinstance(data, dict):
        return None
    value = (data.get("parameters") or {}).get("retry_after")
    try:
        return float(value) if value is not None else None
    except (TypeError, ValueError):
        return None


class TelegramTransport:
    """Sends one formatted message to one chat. Raises TransportError on failure."""

    def __init__(
        self,
        bot_token: Optional[str] = None,
        *,
        api_base: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        max_attempts: Optional[int] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.bot_token = bot_token if bot_token is not None else TELEGRAM_BOT_TOKEN
        self.api_base = (api_base or TELEGRAM_API_BASE).rstrip("/")
        self.timeout_seconds = float(timeout_seconds or TELEGRAM_TIMEOUT_SECONDS)
        self.max_attempts = int(max_attempts or TELEGRAM_BACKOFF_POLICY["max_attempts"])
        self._session_factory = session_factory or self._default_session
        self._sleep = sleep

    def _default_session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_seconds))

    def _method_url(self, method: str) -> str:
        return f"{self.api_base}/bot{self.bot_token}/{method}"

    async def _call(self, method: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        if not self.bot_token:
            raise TransportError("Telegram bot token not configured")

        attempts = 0
        last_error = "unknown error"
        last_status: Optional[int] = None
        retry_after: Optional[float] = None
        while attempts < self.max_attempts:
            attempts += 1
            try:
                async with self._session_factory() as session:
                    async with session.post(self._method_url(method), json=payload) as response:
                        status = response.status
                        data = await response.json(content_type=None)
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                last_status = None
                retry_after = None
                last_error = f"{type(e).__name__}: {e}"
            else:
                if status < 400 and isinstance(data, dict) and data.get("ok"):
                    return data
                description = data.get("description") if isinstance(data, dict) else None
                retry_after = _retry_after(data)
                last_status = status
                last_error = f"HTTP {status}: {description or 'request failed'}"
                # 400/403 (chat not found, bot blocked) will not change on retry
                if status < 500 and status != 429:
                    raise TransportError(last_error, status=status)

            if attempts >= self.max_attempts:
                break
            await self._sleep(compute_backoff_seconds(attempts, policy=TELEGRAM_BACKOFF_POLICY, retry_after=retry_after))

        raise TransportError(last_error, status=last_status)

    async def send(self, chat_id: int, text: str, *, parse_mode: Optional[str] = "HTML") -> None:
        payload: Dict[str, Any] = {
            "chat_id": chat_id,
            "text": text,
            "disable_web_page_preview": True,
        }
        if parse_mode:
            payload["parse_mode"] = parse_mode
        await self._call("sendMessage", payload)
        logger.debug("Telegram message sent", chat_id=chat_id, length=len(text))

    async def check_health(self) -> Dict[str, Any]:
        try:
            data = await self._call("getMe", {})
        except TransportError as e:
            return {"healthy": False, "error": str(e)}
        bot = data.get("result") or {}
        return {"healthy": True, "username": bot.get("username")}


__all__ = ["TelegramTransport"]
