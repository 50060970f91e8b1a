import logging
import re
from typing import List, Optional, Sequence
from urllib.parse import quote

from .agent import CAP_CREATE_COLLECTION, CAP_MINT_NFT, ChatAgent
from .delivery import Button, Delivery, Event, MessageHandle, discard_status, keep_typing, keyboard
from .images import ImageGenerator, new_image_filename
from .pinning import PinataClient, collection_metadata
from .session import AwaitingCollectionAddress, AwaitingImagePrompt, SessionStore
from .storage import ImageRecord, SupabaseStore
from .wallets import WalletService

log = logging.getLogger(__name__)

SOLANA_ADDRESS_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
METADATA_SHORTCUT_PATTERN = re.compile(r"using the metadata ?/ ?uri from previous message", re.IGNORECASE)
RECENT_IMAGES_LIMIT = 5
CALLBACK_DATA_LIMIT = 64

BOT_COMMANDS = [
    ("gen", "Generate an image from a prompt"),
    ("myimages", "View your generated images"),
    ("wallet", "Manage your Solana wallet"),
    ("help", "Show available commands"),
]

WELCOME_TEXT = (
    "Welcome to Solana Image Generation Bot! "
    "I can generate images and help with Solana blockchain."
)
MENU_TEXT = "What would you like to do?"
HELP_TEXT = (
    "I can help you with:\n\n"
    "🖼 Generating images from your text descriptions\n"
    "👛 Managing your Solana wallet\n"
    "🔗 Interacting with the Solana blockchain\n"
    "🌐 Answering questions about Solana, NFTs, and crypto\n\n"
    "Use these commands:\n"
    "/gen [prompt] - Generate an image\n"
    "/myimages - View your stored images\n"
    "/wallet - Manage your Solana wallet"
)
NO_IMAGES_TEXT = "You have no stored images yet. Use /gen or send an image prompt to create some!"
NO_WALLET_TEXT = "You don't have a wallet yet. Create one first!"
INVALID_ADDRESS_TEXT = "That doesn't look like a valid collection address. Please try again or press Cancel."
UNAVAILABLE_TEXT = "Sorry, that feature isn't available right now."
GENERIC_ERROR_TEXT = "Sorry, there was an error. Please try again later."
EXPIRED_PROMPT_TEXT = "That prompt has expired. Please send /gen again."

BACK_TO_MENU = Button("« Back to Menu", "back_to_menu")
BACK_TO_WALLET = Button("« Back to Wallet Menu", "open_wallet")


def is_valid_address(candidate: str) -> bool:
    return bool(SOLANA_ADDRESS_PATTERN.match(candidate.strip()))


def main_menu() -> List[List[Button]]:
    return keyboard(
        [Button("Generate Image", "request_image"), Button("Wallet Settings", "open_wallet")],
        [Button("My Images", "view_images"), Button("Help", "show_help")],
    )


def render_image_list(images: Sequence[ImageRecord], *, limit: int = RECENT_IMAGES_LIMIT) -> str:
    if not images:
        return NO_IMAGES_TEXT
    ordered = sorted(images, key=lambda image: image.created_at, reverse=True)
    lines = ["🖼️ Your most recent images:", ""]
    for index, image in enumerate(ordered[:limit], start=1):
        lines.append(f'{index}. "{image.prompt}"')
        lines.append(image.url)
        lines.append("")
    remaining = len(ordered) - limit
    if remaining > 0:
        lines.append(f"...and {remaining} more images.")
    return "\n".join(lines).rstrip()


def mint_instruction(image: ImageRecord, collection_address: str) -> str:
    return (
        f"{image.prompt}\n\n"
        f"Mint this image as an NFT to collection {collection_address} with the url: {image.url}"
    )


def collection_instruction(metadata_uri: str, name: Optional[str] = None) -> str:
    text = f"Please create an NFT collection using this metadata URI: {metadata_uri}"
    if name:
        text += f"\nName: {name}\nUse default values for all other fields."
    return text


class BotHandlers:
    """One coroutine per intent. Each guarantees a user-visible reply on every path."""

    def __init__(
        self,
        *,
        delivery: Delivery,
        sessions: SessionStore,
        images: ImageGenerator,
        store: SupabaseStore,
        wallets: WalletService,
        agent: ChatAgent,
        pinata: Optional[PinataClient] = None,
    ) -> None:
        self.delivery = delivery
        self.sessions = sessions
        self.images = images
        self.store = store
        self.wallets = wallets
        self.agent = agent
        self.pinata = pinata

    async def _reply(self, event: Event, text: str, buttons=None, **kwargs) -> MessageHandle:
        return await self.delivery.send_message(event.conversation_id, text, buttons, **kwargs)

    async def _fail(self, event: Event, text: str = GENERIC_ERROR_TEXT, buttons=None) -> None:
        try:
            await self._reply(event, text, buttons)
        except Exception as exc:
            log.warning("Failed to deliver error reply to %s: %s", event.conversation_id, exc)

    # ----- menu -----
    async def start(self, event: Event, _argument: str = "") -> None:
        await self._reply(event, WELCOME_TEXT, main_menu())

    async def back_to_menu(self, event: Event, _argument: str = "") -> None:
        await self.delivery.acknowledge(event)
        await self._reply(event, MENU_TEXT, main_menu())

    async def show_help(self, event: Event, _argument: str = "") -> None:
        if event.is_button:
            await self.delivery.acknowledge(event)
        await self._reply(event, HELP_TEXT, keyboard([BACK_TO_MENU]))

    async def request_image(self, event: Event, _argument: str = "") -> None:
        await self.delivery.acknowledge(event)
        self.sessions.set_pending(event.conversation_id, AwaitingImagePrompt())
        await self._reply(event, "Please send me your image prompt or use /gen [prompt]")

    # ----- images -----
    async def gen_command(self, event: Event, prompt: str) -> None:
        prompt = prompt.strip()
        if not prompt:
            await self._reply(event, "Please provide a prompt for your image. Example: A beautiful sunset")
            return
        await self._reply(
            event,
            f'Please select image type for: "{prompt}"',
            keyboard(self._image_type_buttons(event.conversation_id, prompt)),
        )

    def _image_type_buttons(self, conversation_id: str, prompt: str) -> List[Button]:
        encoded = quote(prompt, safe="")
        if len(f"gentransparent:{encoded}".encode("utf-8")) <= CALLBACK_DATA_LIMIT:
            return [
                Button("Standard", f"genstandard:{encoded}"),
                Button("Transparent BG", f"gentransparent:{encoded}"),
            ]
        token = self.sessions.stash_prompt(conversation_id, prompt)
        return [
            Button("Standard", f"genstandard_ref:{token}"),
            Button("Transparent BG", f"gentransparent_ref:{token}"),
        ]

    async def consume_image_prompt(self, event: Event, _pending: AwaitingImagePrompt) -> None:
        self.sessions.clear_pending(event.conversation_id)
        await self.gen_command(event, event.payload)

    async def generate_standard(self, event: Event, prompt: str) -> None:
        await self._generate(event, prompt, transparent=False)

    async def generate_transparent(self, event: Event, prompt: str) -> None:
        await self._generate(event, prompt, transparent=True)

    async def generate_standard_stashed(self, event: Event, token: str) -> None:
        await self._generate_stashed(event, token, transparent=False)

    async def generate_transparent_stashed(self, event: Event, token: str) -> None:
        await self._generate_stashed(event, token, transparent=True)

    async def _generate_stashed(self, event: Event, token: str, *, transparent: bool) -> None:
        prompt = self.sessions.stashed_prompt(event.conversation_id, token)
        if prompt is None:
            await self.delivery.acknowledge(event)
            await self._reply(event, EXPIRED_PROMPT_TEXT)
            return
        await self._generate(event, prompt, transparent=transparent)

    async def _generate(self, event: Event, prompt: str, *, transparent: bool) -> None:
        kind = "transparent image" if transparent else "image"
        status: Optional[MessageHandle] = None
        try:
            await self.delivery.acknowledge(
                event, f"Generating {'transparent' if transparent else 'standard'} image..."
            )
            status = await self._reply(event, f"🎨 Generating your {kind}, please wait...")
            content = await self.images.generate(prompt, transparent=transparent)
            filename = new_image_filename()
            await self.images.save_local_copy(content, filename)
            record = await self.store.store_image(content, filename, event.user_id, prompt)
            await self.delivery.send_image(
                event.conversation_id,
                content,
                f'Image generated: "{self.delivery.escape_markdown(prompt)}"\n\n[View Image]({record.url})',
                self._image_actions(record),
                markdown=True,
            )
        except Exception as exc:
            log.exception("Error generating %s for %s: %s", kind, event.user_id, exc)
            await discard_status(self.delivery, status)
            await self._fail(event, "Sorry, there was an error generating your image. Please try again later.")
            return
        await discard_status(self.delivery, status)

    def _image_actions(self, record: ImageRecord) -> Optional[List[List[Button]]]:
        row = []
        if self.agent.supports(CAP_CREATE_COLLECTION) and self.pinata and self.pinata.available:
            row.append(Button("Create NFT Collection", f"create_collection:{record.id}"))
        if self.agent.supports(CAP_MINT_NFT):
            row.append(Button("Mint to Specific Collection", f"mint_specific:{record.id}"))
        return keyboard(row) if row else None

    async def view_images(self, event: Event, _argument: str = "") -> None:
        if event.is_button:
            await self.delivery.acknowledge(event)
        try:
            images = await self.store.list_images(event.user_id)
        except Exception as exc:
            log.exception("Error fetching images for %s: %s", event.user_id, exc)
            await self._fail(event, "Sorry, there was an error fetching your images. Please try again later.")
            return
        await self._reply(event, render_image_list(images), keyboard([BACK_TO_MENU]))

    # ----- wallet -----
    async def open_wallet(self, event: Event, _argument: str = "") -> None:
        if event.is_button:
            await self.delivery.acknowledge(event)
        delegated = await self.wallets.is_delegated(event.user_id)
        session_button = (
            Button("Revoke Server Session", "wallet:revoke")
            if delegated
            else Button("Enable Server Session", "wallet:delegate")
        )
        await self._reply(
            event,
            "Manage your Solana wallet:",
            keyboard(
                [Button("Create Wallet", "wallet:create")],
                [Button("View Address", "wallet:view")],
                [Button("Export Private Key", "wallet:export")],
                [session_button],
                [BACK_TO_MENU],
            ),
        )

    async def wallet_create(self, event: Event, _argument: str = "") -> None:
        try:
            await self.delivery.acknowledge(event, "Creating wallet...")
            wallet = await self.wallets.create_wallet(event.user_id)
        except Exception as exc:
            log.exception("Error creating wallet for %s: %s", event.user_id, exc)
            await self._fail(event, "Sorry, there was an error creating your wallet. Please try again later.")
            return
        await self._reply(
            event,
            f"✅ Wallet created successfully!\n\nAddress: {wallet.address}\n\n"
            "Keep this address safe. You can use it to receive SOL and NFTs.",
            keyboard([BACK_TO_WALLET]),
        )

    async def wallet_view(self, event: Event, _argument: str = "") -> None:
        try:
            await self.delivery.acknowledge(event, "Fetching wallet address...")
            wallet = await self.wallets.get_wallet(event.user_id)
        except Exception as exc:
            log.exception("Error viewing wallet for %s: %s", event.user_id, exc)
            await self._fail(event, "Sorry, there was an error viewing your wallet. Please try again later.")
            return
        if wallet is None:
            await self._reply(
                event,
                NO_WALLET_TEXT,
                keyboard([Button("Create Wallet", "wallet:create")], [BACK_TO_WALLET]),
            )
            return
        await self._reply(
            event,
            f"Your wallet address:\n\n{wallet.address}\n\nUse this address to receive SOL and NFTs.",
            keyboard([BACK_TO_WALLET]),
        )

    async def wallet_export(self, event: Event, _argument: str = "") -> None:
        try:
            await self.delivery.acknowledge(event, "Exporting wallet...")
            private_key = await self.wallets.export_private_key(event.user_id)
        except Exception as exc:
            log.exception("Error exporting wallet for %s: %s", event.user_id, exc)
            await self._fail(event, "Sorry, there was an error exporting your wallet. Please try again later.")
            return
        if private_key is None:
            await self._reply(
                event,
                NO_WALLET_TEXT,
                keyboard([Button("Create Wallet", "wallet:create")], [BACK_TO_WALLET]),
            )
            return
        await self._reply(
            event,
            "⚠️ IMPORTANT: Keep this private key secure and never share it with anyone!\n\n"
            f"Private Key: {private_key}",
            keyboard([BACK_TO_WALLET]),
        )

    async def wallet_delegate(self, event: Event, _argument: str = "") -> None:
        await self._set_delegation(event, True)

    async def wallet_revoke(self, event: Event, _argument: str = "") -> None:
        await self._set_delegation(event, False)

    async def _set_delegation(self, event: Event, delegated: bool) -> None:
        verb = "enabling" if delegated else "revoking"
        try:
            await self.delivery.acknowledge(
                event, "Enabling server session..." if delegated else "Revoking server session..."
            )
            ok = await self.wallets.set_delegation(event.user_id, delegated)
        except Exception as exc:
            log.exception("Error %s server session for %s: %s", verb, event.user_id, exc)
            ok = False
        if not ok:
            await self._fail(event, f"Sorry, there was an error {verb} the server session. Please try again later.")
            return
        text = (
            "✅ Server session enabled successfully! You can now use advanced features."
            if delegated
            else "✅ Server session revoked successfully!"
        )
        await self._reply(event, text, keyboard([BACK_TO_WALLET]))

    # ----- NFTs -----
    async def create_collection(self, event: Event, image_id: str) -> None:
        await self.delivery.acknowledge(event, "Starting NFT Collection creation...")
        if not self.agent.supports(CAP_CREATE_COLLECTION) or not (self.pinata and self.pinata.available):
            await self._reply(event, UNAVAILABLE_TEXT, keyboard([BACK_TO_MENU]))
            return
        status: Optional[MessageHandle] = None
        try:
            image = await self.store.get_image(event.user_id, image_id)
            if image is None:
                log.info("Collection image %s not found for %s", image_id, event.user_id)
                await self._reply(event, "Image not found.", keyboard([BACK_TO_MENU]))
                return
            status = await self._reply(event, "📤 Uploading image to Pinata...")
            content = await self.pinata.fetch(image.url)
            image_link = await self.pinata.pin_file(content, image.filename)
            await discard_status(self.delivery, status)
            status = await self._reply(event, "📝 Uploading metadata to Pinata...")
            metadata_uri = await self.pinata.pin_json(collection_metadata(image.prompt, image_link))
            self.sessions.remember_metadata_uri(event.conversation_id, metadata_uri)
            await discard_status(self.delivery, status)
            status = await self._reply(event, "🚀 Creating NFT Collection on Solana using your metadata URI...")
            async with keep_typing(self.delivery, event.conversation_id):
                response = await self.agent.respond(
                    event.user_id, collection_instruction(metadata_uri, image.prompt)
                )
        except Exception as exc:
            log.exception("Error creating NFT collection for %s: %s", event.user_id, exc)
            await discard_status(self.delivery, status)
            await self._fail(
                event,
                "Sorry, there was an error creating the NFT collection. Please try again later.",
                keyboard([BACK_TO_MENU]),
            )
            return
        await discard_status(self.delivery, status)
        await self._reply(event, response, keyboard([BACK_TO_MENU]))

    async def use_previous_metadata(self, event: Event) -> None:
        metadata_uri = self.sessions.last_metadata_uri(event.conversation_id)
        if not metadata_uri:
            await self._reply(
                event,
                "No metadata URI found from previous message. Please create NFT metadata first.",
                keyboard([BACK_TO_MENU]),
            )
            return
        await self._ask_agent(event, collection_instruction(metadata_uri), keyboard([BACK_TO_MENU]))

    async def mint_specific(self, event: Event, image_id: str) -> None:
        await self.delivery.acknowledge(event, "Mint to Specific Collection...")
        if not self.agent.supports(CAP_MINT_NFT):
            await self._reply(event, UNAVAILABLE_TEXT, keyboard([BACK_TO_MENU]))
            return
        self.sessions.set_pending(event.conversation_id, AwaitingCollectionAddress(image_id=image_id))
        await self._reply(
            event,
            "Please reply with the collection address where you want to mint this NFT.",
            keyboard([Button("Cancel", "cancel_mint_specific")]),
        )

    async def cancel_mint_specific(self, event: Event, _argument: str = "") -> None:
        await self.delivery.acknowledge(event)
        self.sessions.clear_pending(event.conversation_id)
        await self._reply(event, "Mint to specific collection cancelled.", keyboard([BACK_TO_MENU]))

    async def consume_collection_address(self, event: Event, pending: AwaitingCollectionAddress) -> None:
        address = event.payload.strip()
        if not is_valid_address(address):
            await self._reply(event, INVALID_ADDRESS_TEXT, keyboard([Button("Cancel", "cancel_mint_specific")]))
            return
        status: Optional[MessageHandle] = None
        try:
            image = await self.store.get_image(event.user_id, pending.image_id)
            if image is None:
                self.sessions.clear_pending(event.conversation_id)
                await self._reply(event, "Image not found.", keyboard([BACK_TO_MENU]))
                return
            status = await self._reply(event, "🔨 Minting your NFT to the specified collection. Please wait...")
            async with keep_typing(self.delivery, event.conversation_id):
                response = await self.agent.respond(event.user_id, mint_instruction(image, address))
        except Exception as exc:
            log.exception("Error minting image %s for %s: %s", pending.image_id, event.user_id, exc)
            self.sessions.clear_pending(event.conversation_id)
            await discard_status(self.delivery, status)
            await self._fail(event, "Sorry, there was an error minting your NFT. Please try again later.",
                             keyboard([BACK_TO_MENU]))
            return
        self.sessions.clear_pending(event.conversation_id)
        await discard_status(self.delivery, status)
        await self._reply(event, response, keyboard([BACK_TO_MENU]))

    # ----- free text -----
    async def fallback(self, event: Event, text: str) -> None:
        await self._ask_agent(event, text)

    async def _ask_agent(self, event: Event, text: str, buttons=None) -> None:
        try:
            async with keep_typing(self.delivery, event.conversation_id):
                response = await self.agent.respond(event.user_id, text)
        except Exception as exc:
            log.exception("Error processing agent message for %s: %s", event.user_id, exc)
            await self._fail(event, "Sorry, there was an error processing your message. Please try again later.")
            return
        await self._reply(event, response, buttons)
