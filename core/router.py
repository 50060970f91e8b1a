import logging
from typing import Awaitable, Callable, Dict, List, Optional, Tuple
from urllib.parse import unquote

from .delivery import Event
from .handlers import METADATA_SHORTCUT_PATTERN, BotHandlers
from .session import AwaitingCollectionAddress, AwaitingImagePrompt, SessionStore

log = logging.getLogger(__name__)

Route = Callable[[Event, str], Awaitable[None]]


class CommandRouter:
    """Picks the handler for each inbound event.

    Precedence: a pending continuation captures any text message (slash
    commands included), then slash commands, then the metadata shortcut, then
    the agent fallback. Button presses are never captured by a pending
    continuation so that Cancel always works. Events from one conversation
    are processed one at a time.
    """

    def __init__(self, handlers: BotHandlers, sessions: SessionStore) -> None:
        self.handlers = handlers
        self.sessions = sessions
        self._continuations = {
            AwaitingCollectionAddress: handlers.consume_collection_address,
            AwaitingImagePrompt: handlers.consume_image_prompt,
        }
        self._commands: Dict[str, Route] = {
            "start": handlers.start,
            "gen": handlers.gen_command,
            "myimages": handlers.view_images,
            "wallet": handlers.open_wallet,
            "help": handlers.show_help,
        }
        self._buttons: Dict[str, Route] = {
            "request_image": handlers.request_image,
            "open_wallet": handlers.open_wallet,
            "view_images": handlers.view_images,
            "show_help": handlers.show_help,
            "back_to_menu": handlers.back_to_menu,
            "wallet:create": handlers.wallet_create,
            "wallet:view": handlers.wallet_view,
            "wallet:export": handlers.wallet_export,
            "wallet:delegate": handlers.wallet_delegate,
            "wallet:revoke": handlers.wallet_revoke,
            "cancel_mint_specific": handlers.cancel_mint_specific,
        }
        # (prefix, handler, url-decode argument)
        self._button_prefixes: List[Tuple[str, Route, bool]] = [
            ("genstandard:", handlers.generate_standard, True),
            ("gentransparent:", handlers.generate_transparent, True),
            ("genstandard_ref:", handlers.generate_standard_stashed, False),
            ("gentransparent_ref:", handlers.generate_transparent_stashed, False),
            ("create_collection:", handlers.create_collection, False),
            ("mint_specific:", handlers.mint_specific, False),
        ]

    @property
    def commands(self) -> List[str]:
        return list(self._commands)

    async def dispatch(self, event: Event) -> None:
        async with self.sessions.serialized(event.conversation_id):
            if event.is_text:
                await self._route_text(event)
            elif event.is_button:
                await self._route_button(event)
            else:
                log.debug("Dropping event of unknown kind %r", event.kind)

    async def _route_text(self, event: Event) -> None:
        pending = self.sessions.pending(event.conversation_id)
        if pending is not None:
            continuation = self._continuations[type(pending)]
            await continuation(event, pending)
            return
        text = event.payload.strip()
        if not text:
            return
        if text.startswith("/"):
            command, argument = parse_command(text)
            route = self._commands.get(command)
            if route is None:
                log.debug("Ignoring unknown command /%s from %s", command, event.user_id)
                return
            await route(event, argument)
            return
        if METADATA_SHORTCUT_PATTERN.search(text):
            await self.handlers.use_previous_metadata(event)
            return
        await self.handlers.fallback(event, text)

    def match_button(self, payload: str) -> Tuple[Optional[Route], str]:
        route = self._buttons.get(payload)
        if route is not None:
            return route, ""
        for prefix, prefixed_route, decode in self._button_prefixes:
            if payload.startswith(prefix) and len(payload) > len(prefix):
                argument = payload[len(prefix):]
                return prefixed_route, unquote(argument) if decode else argument
        return None, ""

    async def _route_button(self, event: Event) -> None:
        route, argument = self.match_button(event.payload)
        if route is None:
            log.debug("Ignoring stale button %r from %s", event.payload, event.user_id)
            try:
                await self.handlers.delivery.acknowledge(event)
            except Exception as exc:
                log.debug("Failed to acknowledge stale button: %s", exc)
            return
        await route(event, argument)


def parse_command(text: str) -> Tuple[str, str]:
    head, _, rest = text.strip().partition(" ")
    if "\n" in head:
        head, _, extra = head.partition("\n")
        rest = f"{extra} {rest}".strip()
    command = head[1:].split("@", 1)[0].lower()
    return command, rest.strip()
