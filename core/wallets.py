import logging
from typing import Any, Dict, Optional

import aiohttp

from .storage import SupabaseStore, WalletRecord

log = logging.getLogger(__name__)

PRIVY_API_URL = "https://api.privy.io/v1"
SOLANA_MAINNET_CAIP2 = "solana:5eykt4UsFv8P8NJdTREpY1vzqKqZKvdp"


class WalletError(RuntimeError):
    pass


class PrivyClient:
    """Thin async client for Privy's server wallet REST API."""

    def __init__(
        self,
        *,
        app_id: str,
        app_secret: str,
        base_url: str = PRIVY_API_URL,
        timeout: float = 30.0,
    ) -> None:
        self.app_id = app_id
        self.base_url = base_url.rstrip("/")
        self._auth = aiohttp.BasicAuth(app_id, app_secret)
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=self._timeout,
                auth=self._auth,
                headers={"privy-app-id": self.app_id},
            )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(self, method: str, path: str, *, json: Any = None) -> Dict[str, Any]:
        try:
            async with self._client().request(method, f"{self.base_url}{path}", json=json) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise WalletError(f"Privy {method} {path} failed with status {resp.status}: {body}")
                return await resp.json()
        except aiohttp.ClientError as exc:
            raise WalletError(f"Privy {method} {path} failed: {exc}") from exc

    async def create_wallet(self) -> Dict[str, Any]:
        return await self._request("POST", "/wallets", json={"chain_type": "solana"})

    async def get_wallet(self, wallet_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/wallets/{wallet_id}")

    async def export_wallet(self, wallet_id: str) -> Dict[str, Any]:
        return await self._request("POST", f"/wallets/{wallet_id}/export", json={})

    async def rpc(self, wallet_id: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        return await self._request("POST", f"/wallets/{wallet_id}/rpc", json=payload)

    async def sign_message(self, wallet_id: str, message_b64: str) -> str:
        result = await self.rpc(
            wallet_id,
            {
                "method": "signMessage",
                "params": {"message": message_b64, "encoding": "base64"},
            },
        )
        signature = (result.get("data") or {}).get("signature")
        if not signature:
            raise WalletError("Privy signMessage returned no signature")
        return str(signature)

    async def sign_and_send_transaction(
        self, wallet_id: str, transaction_b64: str, *, caip2: str = SOLANA_MAINNET_CAIP2
    ) -> str:
        result = await self.rpc(
            wallet_id,
            {
                "method": "signAndSendTransaction",
                "caip2": caip2,
                "params": {"transaction": transaction_b64, "encoding": "base64"},
            },
        )
        tx_hash = (result.get("data") or {}).get("hash")
        if not tx_hash:
            raise WalletError("Privy signAndSendTransaction returned no hash")
        return str(tx_hash)


class WalletService:
    """Custodial Solana wallets: Privy holds the keys, Supabase maps users to wallets."""

    def __init__(self, privy: PrivyClient, store: SupabaseStore) -> None:
        self.privy = privy
        self.store = store

    async def create_wallet(self, user_id: str) -> WalletRecord:
        wallet = await self.privy.create_wallet()
        address = wallet.get("address")
        wallet_id = wallet.get("id")
        if not address or not wallet_id:
            raise WalletError("Privy create wallet response missing id/address")
        record = await self.store.save_wallet(user_id, address=address, wallet_id=wallet_id)
        log.info("Created wallet %s for user %s", address, user_id)
        return record

    async def get_wallet(self, user_id: str) -> Optional[WalletRecord]:
        record = await self.store.get_wallet(user_id)
        if not record or not record.wallet_id:
            return None
        return record

    async def get_or_create_wallet(self, user_id: str) -> WalletRecord:
        record = await self.get_wallet(user_id)
        if record is None:
            return await self.create_wallet(user_id)
        try:
            wallet = await self.privy.get_wallet(record.wallet_id)
        except WalletError as exc:
            log.warning("Privy lookup failed for %s, creating a new wallet: %s", user_id, exc)
            return await self.create_wallet(user_id)
        record.address = str(wallet.get("address") or record.address)
        return record

    async def export_private_key(self, user_id: str) -> Optional[str]:
        record = await self.get_wallet(user_id)
        if record is None:
            return None
        exported = await self.privy.export_wallet(record.wallet_id)
        private_key = exported.get("private_key")
        if not private_key:
            raise WalletError("Privy export response missing private key")
        return str(private_key)

    async def is_delegated(self, user_id: str) -> bool:
        try:
            record = await self.store.get_wallet(user_id)
        except Exception as exc:
            log.warning("Failed to read delegation flag for %s: %s", user_id, exc)
            return False
        return bool(record and record.is_delegated)

    async def set_delegation(self, user_id: str, delegated: bool) -> bool:
        try:
            await self.store.update_delegation(user_id, delegated)
        except Exception as exc:
            log.error("Failed to set delegation=%s for %s: %s", delegated, user_id, exc)
            return False
        log.info("Wallet delegation for %s set to %s", user_id, delegated)
        return True
