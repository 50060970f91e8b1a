import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote

import aiohttp

log = logging.getLogger(__name__)

IMAGE_BUCKET = "images"
IMAGE_TABLE = "images"
USER_TABLE = "users"


class StorageError(RuntimeError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ImageRecord:
    id: str
    user_id: str
    prompt: str
    filename: str
    path: str
    url: str
    created_at: str

    @classmethod
    def from_row(cls, row: Dict[str, Any], *, url: Optional[str] = None) -> "ImageRecord":
        return cls(
            id=str(row.get("id") or ""),
            user_id=str(row.get("user_id") or ""),
            prompt=str(row.get("prompt") or ""),
            filename=str(row.get("filename") or ""),
            path=str(row.get("path") or ""),
            url=url or str(row.get("url") or ""),
            created_at=str(row.get("created_at") or ""),
        )


@dataclass
class WalletRecord:
    user_id: str
    address: str
    wallet_id: str
    is_delegated: bool = False
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "WalletRecord":
        return cls(
            user_id=str(row.get("telegram_id") or ""),
            address=str(row.get("wallet_address") or ""),
            wallet_id=str(row.get("wallet_id") or ""),
            is_delegated=bool(row.get("is_wallet_delegated")),
            created_at=str(row.get("created_at") or ""),
            updated_at=str(row.get("updated_at") or ""),
        )


class SupabaseStore:
    """Image and wallet rows kept in Supabase (PostgREST + Storage)."""

    def __init__(self, *, url: str, service_key: str, timeout: float = 30.0) -> None:
        self.base_url = url.rstrip("/")
        self._key = service_key
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._session: Optional[aiohttp.ClientSession] = None

    def _headers(self, **extra: str) -> Dict[str, str]:
        headers = {
            "apikey": self._key,
            "Authorization": f"Bearer {self._key}",
        }
        headers.update(extra)
        return headers

    def _client(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        data: Optional[bytes] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> Any:
        url = f"{self.base_url}{path}"
        try:
            async with self._client().request(
                method,
                url,
                params=params,
                json=json,
                data=data,
                headers=self._headers(**(headers or {})),
            ) as resp:
                if resp.status >= 400:
                    body = await resp.text()
                    raise StorageError(f"{method} {path} failed with status {resp.status}: {body}")
                if resp.content_type == "application/json":
                    return await resp.json()
                return await resp.text()
        except aiohttp.ClientError as exc:
            raise StorageError(f"{method} {path} failed: {exc}") from exc

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/storage/v1/object/public/{IMAGE_BUCKET}/{quote(path)}"

    # ----- images -----
    async def store_image(
        self, content: bytes, filename: str, user_id: str, prompt: str
    ) -> ImageRecord:
        path = f"{user_id}/{filename}"
        await self._request(
            "POST",
            f"/storage/v1/object/{IMAGE_BUCKET}/{quote(path)}",
            data=content,
            headers={"Content-Type": "image/png", "x-upsert": "true"},
        )
        public_url = self.public_url(path)
        rows = await self._request(
            "POST",
            f"/rest/v1/{IMAGE_TABLE}",
            json=[
                {
                    "user_id": user_id,
                    "filename": filename,
                    "prompt": prompt,
                    "path": path,
                    "url": public_url,
                    "created_at": _now_iso(),
                }
            ],
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise StorageError("image row insert returned no data")
        log.info("Stored image %s for user %s", filename, user_id)
        return ImageRecord.from_row(rows[0], url=public_url)

    async def list_images(self, user_id: str) -> List[ImageRecord]:
        rows = await self._request(
            "GET",
            f"/rest/v1/{IMAGE_TABLE}",
            params={
                "select": "*",
                "user_id": f"eq.{user_id}",
                "order": "created_at.desc",
            },
        )
        return [ImageRecord.from_row(row) for row in rows or []]

    async def get_image(self, user_id: str, image_id: str) -> Optional[ImageRecord]:
        for image in await self.list_images(user_id):
            if image.id == image_id:
                return image
        return None

    # ----- wallets -----
    async def get_wallet(self, user_id: str) -> Optional[WalletRecord]:
        rows = await self._request(
            "GET",
            f"/rest/v1/{USER_TABLE}",
            params={"select": "*", "telegram_id": f"eq.{user_id}"},
        )
        if not rows:
            return None
        return WalletRecord.from_row(rows[0])

    async def save_wallet(self, user_id: str, *, address: str, wallet_id: str) -> WalletRecord:
        now = _now_iso()
        existing = await self.get_wallet(user_id)
        if existing:
            rows = await self._request(
                "PATCH",
                f"/rest/v1/{USER_TABLE}",
                params={"telegram_id": f"eq.{user_id}"},
                json={"wallet_address": address, "wallet_id": wallet_id, "updated_at": now},
                headers={"Prefer": "return=representation"},
            )
        else:
            rows = await self._request(
                "POST",
                f"/rest/v1/{USER_TABLE}",
                json={
                    "telegram_id": user_id,
                    "wallet_address": address,
                    "wallet_id": wallet_id,
                    "created_at": now,
                    "updated_at": now,
                },
                headers={"Prefer": "return=representation"},
            )
        if not rows:
            raise StorageError(f"wallet row write for {user_id} returned no data")
        return WalletRecord.from_row(rows[0])

    async def update_delegation(self, user_id: str, is_delegated: bool) -> WalletRecord:
        rows = await self._request(
            "PATCH",
            f"/rest/v1/{USER_TABLE}",
            params={"telegram_id": f"eq.{user_id}"},
            json={"is_wallet_delegated": is_delegated, "updated_at": _now_iso()},
            headers={"Prefer": "return=representation"},
        )
        if not rows:
            raise StorageError(f"no wallet row for {user_id}")
        return WalletRecord.from_row(rows[0])
