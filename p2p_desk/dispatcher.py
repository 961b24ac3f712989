"""
Notification Dispatcher.

============================================================
PURPOSE
============================================================
Delivers lifecycle events to chat surfaces.

PRINCIPLES:
- Fire-and-forget from the lifecycle's point of view
- Delivery failures are logged, never raised
- Announcement handles are opaque strings stored on the operation

Announcement refs have the form "<chat_id>:<message_id>", several
refs joined with "," when an offer is broadcast to many chats.

============================================================
"""

import asyncio
import html
import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from decimal import Decimal
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import aiohttp

from .config import TelegramConfig
from .types import OperationKind, OperationRecord, OperationStatus


logger = logging.getLogger(__name__)


# ============================================================
# INTERFACE
# ============================================================

class NotificationDispatcher(ABC):
    """Collaborator the lifecycle notifies after each committed transition."""

    @abstractmethod
    async def announce(self, operation: OperationRecord) -> Optional[str]:
        """Post a new offer; returns the announcement ref."""
        pass

    @abstractmethod
    async def announce_to_scope(
        self,
        operation: OperationRecord,
        scope_id: int,
    ) -> Optional[str]:
        """Post an offer into one specific group."""
        pass

    @abstractmethod
    async def retract(self, operation: OperationRecord) -> None:
        """Remove the announcement of an offer."""
        pass

    @abstractmethod
    async def notify_accepted(self, operation: OperationRecord, acceptor_id: int) -> None:
        pass

    @abstractmethod
    async def notify_completion_requested(
        self,
        operation: OperationRecord,
        requester_id: int,
    ) -> None:
        pass

    @abstractmethod
    async def notify_completed(self, operation: OperationRecord) -> None:
        pass

    @abstractmethod
    async def notify_reverted(self, operation: OperationRecord, actor_id: int) -> None:
        """Restore the original announcement of a reopened offer."""
        pass

    async def close(self) -> None:
        pass


class LoggingDispatcher(NotificationDispatcher):
    """Dispatcher without transport; events only reach the log."""

    async def announce(self, operation: OperationRecord) -> Optional[str]:
        logger.info(f"[announce] {operation.operation_id}")
        return None

    async def announce_to_scope(
        self,
        operation: OperationRecord,
        scope_id: int,
    ) -> Optional[str]:
        logger.info(f"[announce] {operation.operation_id} in scope {scope_id}")
        return None

    async def retract(self, operation: OperationRecord) -> None:
        logger.info(f"[retract] {operation.operation_id}")

    async def notify_accepted(self, operation: OperationRecord, acceptor_id: int) -> None:
        logger.info(f"[accepted] {operation.operation_id} by {acceptor_id}")

    async def notify_completion_requested(
        self,
        operation: OperationRecord,
        requester_id: int,
    ) -> None:
        logger.info(f"[completion requested] {operation.operation_id} by {requester_id}")

    async def notify_completed(self, operation: OperationRecord) -> None:
        logger.info(f"[completed] {operation.operation_id}")

    async def notify_reverted(self, operation: OperationRecord, actor_id: int) -> None:
        logger.info(f"[reverted] {operation.operation_id} by {actor_id}")


# ============================================================
# TELEGRAM MESSAGE FORMATTER
# ============================================================

class OperationFormatter:
    """
    Formats offers for Telegram.

    Uses HTML formatting.
    """

    KIND_ICONS = {
        OperationKind.BUY: "🟢",
        OperationKind.SELL: "🔴",
        OperationKind.ANNOUNCE: "📢",
        OperationKind.EXCHANGE: "🔄",
    }

    STATUS_LABELS = {
        OperationStatus.PENDING: "⏳ Available",
        OperationStatus.ACCEPTED: "🤝 Accepted",
        OperationStatus.PENDING_COMPLETION: "⌛ Awaiting confirmation",
        OperationStatus.COMPLETED: "✅ Completed",
        OperationStatus.CANCELLED: "❌ Cancelled",
        OperationStatus.CLOSED: "🔒 Closed",
    }

    @staticmethod
    def _number(value: Decimal) -> str:
        text = f"{value:f}"
        if "." in text:
            text = text.rstrip("0").rstrip(".")
        return text

    @classmethod
    def format_offer(cls, operation: OperationRecord) -> str:
        icon = cls.KIND_ICONS.get(operation.kind, "📌")
        assets = html.escape(", ".join(operation.assets))
        networks = html.escape(", ".join(operation.networks))

        lines = [
            f"{icon} <b>{operation.kind.value.upper()}</b> {assets}",
            "",
            f"Amount: <code>{cls._number(operation.amount)}</code>",
            f"Price: <code>{cls._number(operation.unit_price)}</code>"
            f" ({operation.quotation_mode.value})",
            f"Total: <code>{cls._number(operation.total)}</code>",
            f"Networks: {networks}",
        ]
        if operation.description:
            lines.append(f"<i>{html.escape(operation.description)}</i>")
        lines.append("")
        lines.append(cls.STATUS_LABELS.get(operation.status, operation.status.value))
        lines.append(f"🕐 Expires {operation.expires_at.strftime('%Y-%m-%d %H:%M UTC')}")
        lines.append(f"<code>{operation.operation_id}</code>")
        return "\n".join(lines)

    @classmethod
    def format_event(cls, operation: OperationRecord, headline: str) -> str:
        assets = html.escape(", ".join(operation.assets))
        return "\n".join([
            f"<b>{html.escape(headline)}</b>",
            f"{operation.kind.value.upper()} {assets} "
            f"x {cls._number(operation.amount)}",
            f"<code>{operation.operation_id}</code>",
        ])


# ============================================================
# RATE LIMITER
# ============================================================

class TelegramRateLimiter:
    """
    Bounds Bot API calls per rolling minute and rolling hour.

    One queue of send times serves both windows: entries older than
    an hour are dropped from the left, the minute count is taken from
    the right.
    """

    MINUTE = 60.0
    HOUR = 3600.0

    def __init__(
        self,
        max_per_minute: int = 20,
        max_per_hour: int = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.max_per_minute = max_per_minute
        self.max_per_hour = max_per_hour
        self._clock = clock
        self._sent: Deque[float] = deque()
        self._lock = asyncio.Lock()

    def _prune(self, now: float) -> None:
        while self._sent and self._sent[0] <= now - self.HOUR:
            self._sent.popleft()

    def _sent_since(self, cutoff: float) -> int:
        count = 0
        for stamp in reversed(self._sent):
            if stamp <= cutoff:
                break
            count += 1
        return count

    def retry_after(self) -> float:
        """Seconds until a slot frees up; 0 when one is free now."""
        now = self._clock()
        self._prune(now)
        waits = []
        if len(self._sent) >= self.max_per_hour:
            waits.append(self._sent[-self.max_per_hour] + self.HOUR - now)
        if self._sent_since(now - self.MINUTE) >= self.max_per_minute:
            waits.append(self._sent[-self.max_per_minute] + self.MINUTE - now)
        return max([0.0] + waits)

    async def acquire(self) -> bool:
        """Take a send slot if both windows have room."""
        async with self._lock:
            now = self._clock()
            self._prune(now)

            if len(self._sent) >= self.max_per_hour:
                return False
            if self._sent_since(now - self.MINUTE) >= self.max_per_minute:
                return False

            self._sent.append(now)
            return True


# ============================================================
# TELEGRAM DISPATCHER
# ============================================================

def parse_message_refs(message_ref: Optional[str]) -> List[Tuple[str, int]]:
    """Split "chat:msg,chat:msg" into (chat_id, message_id) pairs."""
    refs: List[Tuple[str, int]] = []
    if not message_ref:
        return refs
    for part in message_ref.split(","):
        chat_id, sep, message_id = part.strip().rpartition(":")
        if not sep or not chat_id or not message_id.isdigit():
            logger.warning(f"Ignoring malformed message ref: {part!r}")
            continue
        refs.append((chat_id, int(message_id)))
    return refs


class TelegramDispatcher(NotificationDispatcher):
    """
    Dispatcher over the Telegram Bot API.

    Offers with a scope are posted into that group; offers without
    one go to every broadcast chat. Participants are notified in
    their private chat (chat_id == user_id).
    """

    BASE_URL = "https://api.telegram.org/bot"

    def __init__(
        self,
        config: TelegramConfig,
        rate_limiter: Optional[TelegramRateLimiter] = None,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._config = config
        self._rate_limiter = rate_limiter or TelegramRateLimiter(
            max_per_minute=config.max_per_minute,
            max_per_hour=config.max_per_hour,
        )
        self._formatter = OperationFormatter()
        self._session = session

        if config.enabled:
            logger.info(
                f"TelegramDispatcher enabled with {len(config.broadcast_chat_ids)} broadcast chat(s)"
            )
        else:
            logger.warning("TelegramDispatcher NOT configured - check TELEGRAM_BOT_TOKEN")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self._config.request_timeout_seconds)
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
            self._session = None

    # --------------------------------------------------------
    # EVENTS
    # --------------------------------------------------------

    async def announce(self, operation: OperationRecord) -> Optional[str]:
        if operation.scope_id is not None:
            return await self.announce_to_scope(operation, operation.scope_id)

        text = self._formatter.format_offer(operation)
        refs = []
        for chat_id in self._config.broadcast_chat_ids:
            ref = await self._post(chat_id, text)
            if ref:
                refs.append(ref)
        return ",".join(refs) or None

    async def announce_to_scope(
        self,
        operation: OperationRecord,
        scope_id: int,
    ) -> Optional[str]:
        return await self._post(str(scope_id), self._formatter.format_offer(operation))

    async def retract(self, operation: OperationRecord) -> None:
        for chat_id, message_id in parse_message_refs(operation.message_ref):
            await self._call("deleteMessage", {
                "chat_id": chat_id,
                "message_id": message_id,
            })

    async def notify_accepted(self, operation: OperationRecord, acceptor_id: int) -> None:
        await self._edit_announcement(operation)
        await self._post(
            str(operation.creator_id),
            self._formatter.format_event(operation, f"Your offer was accepted by {acceptor_id}"),
        )

    async def notify_completion_requested(
        self,
        operation: OperationRecord,
        requester_id: int,
    ) -> None:
        counterparty = operation.counterparty_of(requester_id)
        if counterparty is None:
            return
        await self._post(
            str(counterparty),
            self._formatter.format_event(operation, "Please confirm the trade is complete"),
        )

    async def notify_completed(self, operation: OperationRecord) -> None:
        await self._edit_announcement(operation)
        for user_id in operation.participants:
            await self._post(
                str(user_id),
                self._formatter.format_event(
                    operation, "Trade completed - rate your counterparty",
                ),
            )

    async def notify_reverted(self, operation: OperationRecord, actor_id: int) -> None:
        await self._edit_announcement(operation)
        counterparty = operation.counterparty_of(actor_id)
        if counterparty is not None:
            await self._post(
                str(counterparty),
                self._formatter.format_event(operation, "Trade reverted, offer reopened"),
            )

    # --------------------------------------------------------
    # TRANSPORT
    # --------------------------------------------------------

    async def _edit_announcement(self, operation: OperationRecord) -> None:
        text = self._formatter.format_offer(operation)
        for chat_id, message_id in parse_message_refs(operation.message_ref):
            await self._call("editMessageText", {
                "chat_id": chat_id,
                "message_id": message_id,
                "text": text,
                "parse_mode": "HTML",
            })

    async def _post(self, chat_id: str, text: str) -> Optional[str]:
        result = await self._call("sendMessage", {
            "chat_id": chat_id,
            "text": text,
            "parse_mode": "HTML",
            "disable_web_page_preview": True,
        })
        if isinstance(result, dict) and "message_id" in result:
            return f"{chat_id}:{result['message_id']}"
        return None

    async def _call(self, method: str, payload: Dict[str, Any]) -> Optional[Any]:
        """POST one Bot API method; returns its result or None on failure."""
        if not self._config.enabled:
            return None

        if not await self._rate_limiter.acquire():
            logger.warning(
                f"Telegram rate limit reached, {method} not sent "
                f"(slot free in {self._rate_limiter.retry_after():.0f}s)"
            )
            return None

        try:
            session = await self._get_session()
            url = f"{self.BASE_URL}{self._config.bot_token}/{method}"

            async with session.post(url, json=payload) as response:
                if response.status != 200:
                    body = await response.text()
                    logger.error(f"Telegram API error on {method}: {response.status} - {body}")
                    return None
                data = await response.json()
                if not data.get("ok"):
                    logger.error(f"Telegram API refused {method}: {data.get('description')}")
                    return None
                return data.get("result")

        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Error calling Telegram {method}: {e}")
            return None
