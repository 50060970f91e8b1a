import asyncio
import base64
import logging
import time
from pathlib import Path
from typing import Optional

from openai import AsyncOpenAI

log = logging.getLogger(__name__)

DEFAULT_IMAGE_MODEL = "gpt-image-1"


class ImageGenerationError(RuntimeError):
    pass


def new_image_filename() -> str:
    return f"image_{int(time.time() * 1000)}.png"


class ImageGenerator:
    def __init__(
        self,
        client: AsyncOpenAI,
        *,
        model: str = DEFAULT_IMAGE_MODEL,
        output_dir: Optional[Path] = None,
    ) -> None:
        self.client = client
        self.model = model
        self.output_dir = output_dir
        if self.output_dir:
            self.output_dir.mkdir(parents=True, exist_ok=True)

    async def generate(self, prompt: str, *, transparent: bool = False) -> bytes:
        params = {"model": self.model, "prompt": prompt, "quality": "auto"}
        if transparent:
            params["background"] = "transparent"
            params["output_format"] = "png"
        response = await self.client.images.generate(**params)
        if not response.data or not response.data[0].b64_json:
            raise ImageGenerationError("No image data received from OpenAI")
        try:
            return base64.b64decode(response.data[0].b64_json)
        except (ValueError, TypeError) as exc:
            raise ImageGenerationError(f"Undecodable image payload: {exc}") from exc

    async def save_local_copy(self, content: bytes, filename: str) -> Optional[Path]:
        if not self.output_dir:
            return None
        target = self.output_dir / filename
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, target.write_bytes, content)
        except OSError as exc:
            log.warning("Failed to write local copy %s: %s", target, exc)
            return None
        return target
