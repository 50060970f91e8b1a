import logging
from typing import Any, Dict, Optional

import aiohttp

log = logging.getLogger(__name__)

PINATA_API_URL = "https://api.pinata.cloud"
PINATA_GATEWAY_URL = "https://gateway.pinata.cloud/ipfs"


class PinningError(RuntimeError):
    pass


class PinataClient:
    """Pins NFT images and metadata to IPFS through Pinata."""

    def __init__(
        self,
        *,
        jwt: Optional[str],
        api_url: str = PINATA_API_URL,
        gateway_url: str = PINATA_GATEWAY_URL,
        timeout: float = 60.0,
    ) -> None:
        self.jwt = jwt
        self.api_url = api_url.rstrip("/")
        self.gateway_url = gateway_url.rstrip("/")
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    @property
    def available(self) -> bool:
        return bool(self.jwt)

    def gateway_link(self, ipfs_hash: str) -> str:
        return f"{self.gateway_url}/{ipfs_hash}"

    async def _post(self, path: str, **kwargs: Any) -> Dict[str, Any]:
        if not self.jwt:
            raise PinningError("Pinata JWT not set in environment")
        headers = {"Authorization": f"Bearer {self.jwt}"}
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(f"{self.api_url}{path}", headers=headers, **kwargs) as resp:
                    if resp.status >= 400:
                        body = await resp.text()
                        raise PinningError(f"Pinata {path} failed with status {resp.status}: {body}")
                    return await resp.json()
        except aiohttp.ClientError as exc:
            raise PinningError(f"Pinata {path} failed: {exc}") from exc

    async def pin_file(self, content: bytes, filename: str) -> str:
        form = aiohttp.FormData()
        form.add_field("file", content, filename=filename, content_type="image/png")
        result = await self._post("/pinning/pinFileToIPFS", data=form)
        link = self.gateway_link(result["IpfsHash"])
        log.info("Pinned %s to %s", filename, link)
        return link

    async def pin_json(self, metadata: Dict[str, Any]) -> str:
        result = await self._post("/pinning/pinJSONToIPFS", json=metadata)
        return self.gateway_link(result["IpfsHash"])

    async def fetch(self, url: str) -> bytes:
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.get(url) as resp:
                    if resp.status != 200:
                        raise PinningError(f"Failed to download {url}: status {resp.status}")
                    return await resp.read()
        except aiohttp.ClientError as exc:
            raise PinningError(f"Failed to download {url}: {exc}") from exc


def collection_metadata(name: str, image_url: str) -> Dict[str, Any]:
    return {
        "name": name,
        "symbol": name,
        "description": name,
        "image": image_url,
        "attributes": [{"trait_type": "Total Supply", "value": "1000000000"}],
    }


def asset_metadata(name: str, image_url: str) -> Dict[str, Any]:
    return {
        "name": name,
        "description": name,
        "image": image_url,
        "properties": {"files": [{"uri": image_url, "type": "image/png"}], "category": "image"},
    }
