"""NFT tools for the agent: Metaplex Core assets and collections.

Transactions are built locally, signed by the fresh asset or collection
keypair, then co-signed and broadcast by the user's Privy wallet.
"""

import base64
import logging
import struct
from typing import Any, Dict, List, Optional

from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction

from .agent import CAP_CREATE_COLLECTION, CAP_MINT_NFT, SolanaRpc, Tool
from .pinning import PinataClient, asset_metadata
from .storage import WalletRecord
from .wallets import SOLANA_MAINNET_CAIP2, PrivyClient, WalletService

log = logging.getLogger(__name__)

MPL_CORE_PROGRAM_ID = Pubkey.from_string("CoREENxT6tW1HoK8ypY1SxRMZTcVPm7R94rH4PZNhX7d")

# instruction discriminators of the Core program
CREATE_V1 = 0
CREATE_COLLECTION_V1 = 1
DATA_STATE_ACCOUNT = 0

DEFAULT_NFT_NAME = "Generated Image"


def _borsh_string(value: str) -> bytes:
    raw = value.encode("utf-8")
    return struct.pack("<I", len(raw)) + raw


def _unused() -> AccountMeta:
    # optional accounts left out are passed as the program id
    return AccountMeta(MPL_CORE_PROGRAM_ID, False, False)


def create_asset_instruction(
    asset: Pubkey,
    payer: Pubkey,
    name: str,
    uri: str,
    *,
    collection: Optional[Pubkey] = None,
) -> Instruction:
    data = (
        bytes([CREATE_V1, DATA_STATE_ACCOUNT])
        + _borsh_string(name)
        + _borsh_string(uri)
        + b"\x00"  # no plugins
    )
    accounts = [
        AccountMeta(asset, True, True),
        AccountMeta(collection, False, True) if collection else _unused(),
        AccountMeta(payer, True, False),  # authority
        AccountMeta(payer, True, True),  # payer
        _unused(),  # owner defaults to the payer
        _unused(),  # update authority comes from the collection or the payer
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
        _unused(),  # log wrapper
    ]
    return Instruction(MPL_CORE_PROGRAM_ID, data, accounts)


def create_collection_instruction(collection: Pubkey, payer: Pubkey, name: str, uri: str) -> Instruction:
    data = bytes([CREATE_COLLECTION_V1]) + _borsh_string(name) + _borsh_string(uri) + b"\x00"
    accounts = [
        AccountMeta(collection, True, True),
        _unused(),  # update authority defaults to the payer
        AccountMeta(payer, True, True),
        AccountMeta(SYSTEM_PROGRAM_ID, False, False),
    ]
    return Instruction(MPL_CORE_PROGRAM_ID, data, accounts)


class CoreMinter:
    """Mints Core assets and collections paid for and signed by a Privy wallet."""

    def __init__(self, privy: PrivyClient, rpc: SolanaRpc, *, caip2: str = SOLANA_MAINNET_CAIP2) -> None:
        self.privy = privy
        self.rpc = rpc
        self.caip2 = caip2

    async def _submit(self, wallet: WalletRecord, instruction: Instruction, signer: Keypair) -> str:
        blockhash = Hash.from_string(await self.rpc.latest_blockhash())
        payer = Pubkey.from_string(wallet.address)
        transaction = Transaction.new_unsigned(Message.new_with_blockhash([instruction], payer, blockhash))
        transaction.partial_sign([signer], blockhash)
        encoded = base64.b64encode(bytes(transaction)).decode("ascii")
        return await self.privy.sign_and_send_transaction(wallet.wallet_id, encoded, caip2=self.caip2)

    async def mint(
        self, wallet: WalletRecord, *, name: str, uri: str, collection: Optional[str] = None
    ) -> Dict[str, Any]:
        asset = Keypair()
        collection_key = Pubkey.from_string(collection) if collection else None
        instruction = create_asset_instruction(
            asset.pubkey(), Pubkey.from_string(wallet.address), name, uri, collection=collection_key
        )
        signature = await self._submit(wallet, instruction, asset)
        log.info("Minted asset %s for wallet %s: %s", asset.pubkey(), wallet.address, signature)
        return {"asset": str(asset.pubkey()), "collection": collection, "signature": signature}

    async def create_collection(self, wallet: WalletRecord, *, name: str, uri: str) -> Dict[str, Any]:
        collection = Keypair()
        instruction = create_collection_instruction(
            collection.pubkey(), Pubkey.from_string(wallet.address), name, uri
        )
        signature = await self._submit(wallet, instruction, collection)
        log.info("Created collection %s for wallet %s: %s", collection.pubkey(), wallet.address, signature)
        return {"collection": str(collection.pubkey()), "signature": signature}


def nft_tools(wallets: WalletService, minter: CoreMinter, pinata: Optional[PinataClient] = None) -> List[Tool]:
    async def mint_nft(user_id: str, args: Dict[str, Any]) -> dict:
        wallet = await wallets.get_or_create_wallet(user_id)
        name = str(args.get("name") or DEFAULT_NFT_NAME)[:32]
        uri = args.get("metadata_uri")
        if not uri:
            image_url = str(args.get("image_url") or "")
            if not image_url:
                raise ValueError("image_url or metadata_uri is required")
            uri = image_url
            if pinata and pinata.available:
                uri = await pinata.pin_json(asset_metadata(name, image_url))
        return await minter.mint(wallet, name=name, uri=uri, collection=args.get("collection_address") or None)

    async def create_collection(user_id: str, args: Dict[str, Any]) -> dict:
        wallet = await wallets.get_or_create_wallet(user_id)
        uri = str(args.get("metadata_uri") or "")
        if not uri:
            raise ValueError("metadata_uri is required")
        name = str(args.get("name") or DEFAULT_NFT_NAME)[:32]
        return await minter.create_collection(wallet, name=name, uri=uri)

    return [
        Tool(
            name="mint_nft",
            capability=CAP_MINT_NFT,
            description=(
                "Mint an NFT to the user's wallet, optionally into a collection the user controls. "
                "Give either an image URL or a metadata URI."
            ),
            handler=mint_nft,
            parameters={
                "type": "object",
                "properties": {
                    "name": {"type": "string", "description": "NFT name, at most 32 characters."},
                    "image_url": {"type": "string"},
                    "metadata_uri": {"type": "string"},
                    "collection_address": {"type": "string", "description": "Base-58 collection address."},
                },
                "required": [],
            },
        ),
        Tool(
            name="create_collection",
            capability=CAP_CREATE_COLLECTION,
            description="Create an NFT collection owned by the user's wallet from a metadata URI.",
            handler=create_collection,
            parameters={
                "type": "object",
                "properties": {
                    "name": {"type": "string"},
                    "metadata_uri": {"type": "string"},
                },
                "required": ["metadata_uri"],
            },
        ),
    ]
