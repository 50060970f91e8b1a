"""Shared fakes: a recording delivery surface and mocked collaborators."""

from itertools import count
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from core.delivery import Delivery, Event, MessageHandle
from core.handlers import BotHandlers
from core.router import CommandRouter
from core.session import SessionStore
from core.storage import ImageRecord

VALID_ADDRESS = "3NZ9JMV3mGQP9jY7hpdLWYtQvyG4Hrkf6UbA2dbRYuB8"


class RecordingDelivery(Delivery):
    def __init__(self):
        self._ids = count(1)
        self.messages = []
        self.images = []
        self.deleted = []
        self.acks = []
        self.typing = 0
        self.fail_delete = False

    async def send_message(self, conversation_id, text, buttons=None, *, markdown=False):
        handle = MessageHandle(conversation_id, next(self._ids))
        self.messages.append(SimpleNamespace(handle=handle, text=text, buttons=buttons))
        return handle

    async def delete_message(self, handle):
        if self.fail_delete:
            raise RuntimeError("message to delete not found")
        self.deleted.append(handle)

    async def send_image(self, conversation_id, content, caption, buttons=None, *, markdown=False):
        handle = MessageHandle(conversation_id, next(self._ids))
        self.images.append(SimpleNamespace(handle=handle, content=content, caption=caption, buttons=buttons))
        return handle

    async def acknowledge(self, event, text=None):
        self.acks.append((event.payload, text))

    async def send_typing(self, conversation_id):
        self.typing += 1

    @property
    def texts(self):
        return [message.text for message in self.messages]

    def visible_texts(self):
        deleted = {handle.message_id for handle in self.deleted}
        return [m.text for m in self.messages if m.handle.message_id not in deleted]


def make_image(index: int, user_id: str = "42") -> ImageRecord:
    return ImageRecord(
        id=f"img-{index}",
        user_id=user_id,
        prompt=f"prompt {index}",
        filename=f"image_{index}.png",
        path=f"{user_id}/image_{index}.png",
        url=f"https://cdn.example/{user_id}/image_{index}.png",
        created_at=f"2024-05-{index:02d}T12:00:00+00:00",
    )


def text_event(text: str, *, conversation_id: str = "100", user_id: str = "42") -> Event:
    return Event(conversation_id=conversation_id, user_id=user_id, kind="text", payload=text)


def button_event(payload: str, *, conversation_id: str = "100", user_id: str = "42") -> Event:
    return Event(
        conversation_id=conversation_id,
        user_id=user_id,
        kind="button",
        payload=payload,
        callback_id="cb-1",
    )


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def collaborators():
    store = MagicMock()
    store.list_images = AsyncMock(return_value=[])
    store.get_image = AsyncMock(return_value=None)
    store.store_image = AsyncMock()

    images = MagicMock()
    images.generate = AsyncMock(return_value=b"\x89PNG")
    images.save_local_copy = AsyncMock(return_value=None)

    wallets = MagicMock()
    wallets.create_wallet = AsyncMock()
    wallets.get_wallet = AsyncMock(return_value=None)
    wallets.export_private_key = AsyncMock(return_value=None)
    wallets.is_delegated = AsyncMock(return_value=False)
    wallets.set_delegation = AsyncMock(return_value=True)

    agent = MagicMock()
    agent.respond = AsyncMock(return_value="Minted! tx 5xyz")
    agent.supports = MagicMock(return_value=True)

    pinata = MagicMock()
    pinata.available = True
    pinata.fetch = AsyncMock(return_value=b"\x89PNG")
    pinata.pin_file = AsyncMock(return_value="https://gateway.pinata.cloud/ipfs/QmImage")
    pinata.pin_json = AsyncMock(return_value="https://gateway.pinata.cloud/ipfs/QmMeta")

    return SimpleNamespace(store=store, images=images, wallets=wallets, agent=agent, pinata=pinata)


@pytest.fixture
def sessions():
    return SessionStore()


@pytest.fixture
def handlers(delivery, sessions, collaborators):
    return BotHandlers(
        delivery=delivery,
        sessions=sessions,
        images=collaborators.images,
        store=collaborators.store,
        wallets=collaborators.wallets,
        agent=collaborators.agent,
        pinata=collaborators.pinata,
    )


@pytest.fixture
def router(handlers, sessions):
    return CommandRouter(handlers, sessions)
