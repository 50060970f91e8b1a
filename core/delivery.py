import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from dataclasses import dataclass
from typing import AsyncIterator, List, Optional, Sequence

from telegram.helpers import escape_markdown

log = logging.getLogger(__name__)

TYPING_INTERVAL_SECONDS = 5.0


@dataclass(frozen=True)
class Button:
    label: str
    payload: str


Keyboard = Sequence[Sequence[Button]]


@dataclass(frozen=True)
class MessageHandle:
    conversation_id: str
    message_id: int


@dataclass(frozen=True)
class Event:
    """One inbound update, already reduced to what the router needs."""

    conversation_id: str
    user_id: str
    kind: str  # "text" or "button"
    payload: str
    callback_id: Optional[str] = None

    @property
    def is_text(self) -> bool:
        return self.kind == "text"

    @property
    def is_button(self) -> bool:
        return self.kind == "button"


class Delivery:
    """Outbound surface the handlers talk to. Transports subclass this."""

    async def send_message(
        self,
        conversation_id: str,
        text: str,
        buttons: Optional[Keyboard] = None,
        *,
        markdown: bool = False,
    ) -> MessageHandle:
        raise NotImplementedError

    async def delete_message(self, handle: MessageHandle) -> None:
        raise NotImplementedError

    async def send_image(
        self,
        conversation_id: str,
        content: bytes,
        caption: str,
        buttons: Optional[Keyboard] = None,
        *,
        markdown: bool = False,
    ) -> MessageHandle:
        raise NotImplementedError

    async def acknowledge(self, event: Event, text: Optional[str] = None) -> None:
        raise NotImplementedError

    async def send_typing(self, conversation_id: str) -> None:
        raise NotImplementedError

    def escape_markdown(self, text: str) -> str:
        """Escape user text placed inside a markdown message."""
        return escape_markdown(text, version=1)


def keyboard(*rows: List[Button]) -> List[List[Button]]:
    return [list(row) for row in rows]


async def discard_status(delivery: Delivery, handle: Optional[MessageHandle]) -> None:
    if handle is None:
        return
    try:
        await delivery.delete_message(handle)
    except Exception as exc:
        log.warning("Failed to delete status message %s: %s", handle.message_id, exc)


async def _signal_typing(delivery: Delivery, conversation_id: str) -> None:
    try:
        await delivery.send_typing(conversation_id)
    except Exception as exc:
        log.debug("typing signal failed for %s: %s", conversation_id, exc)


async def _typing_loop(delivery: Delivery, conversation_id: str, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        await _signal_typing(delivery, conversation_id)


@asynccontextmanager
async def keep_typing(
    delivery: Delivery,
    conversation_id: str,
    *,
    interval: float = TYPING_INTERVAL_SECONDS,
) -> AsyncIterator[None]:
    await _signal_typing(delivery, conversation_id)
    task = asyncio.create_task(_typing_loop(delivery, conversation_id, interval))
    try:
        yield
    finally:
        task.cancel()
        with suppress(asyncio.CancelledError):
            await task
