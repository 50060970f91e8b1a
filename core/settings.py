import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

from .agent import DEFAULT_AGENT_TIMEOUT
from .images import DEFAULT_IMAGE_MODEL
from .pinning import PINATA_API_URL
from .wallets import SOLANA_MAINNET_CAIP2

REQUIRED_VARIABLES = (
    "TELEGRAM_BOT_TOKEN",
    "OPENAI_API_KEY",
    "SUPABASE_URL",
    "SUPABASE_SERVICE_KEY",
    "PRIVY_APP_ID",
    "PRIVY_APP_SECRET",
)


@dataclass
class Settings:
    telegram_token: str
    openai_api_key: str
    supabase_url: str
    supabase_key: str
    privy_app_id: str
    privy_app_secret: str
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    model: Optional[str] = None
    image_model: str = DEFAULT_IMAGE_MODEL
    pinata_jwt: Optional[str] = None
    pinata_api_url: str = PINATA_API_URL
    port: int = 3007
    output_dir: Path = Path("generated_images")
    agent_timeout: float = DEFAULT_AGENT_TIMEOUT
    agent_config_override: Optional[Path] = None
    solana_caip2: str = SOLANA_MAINNET_CAIP2

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "Settings":
        env = os.environ if env is None else env
        missing = [name for name in REQUIRED_VARIABLES if not env.get(name)]
        if missing:
            raise SystemExit(
                f"Missing required environment variables: {', '.join(missing)}. "
                "Please set them in the .env file."
            )
        port_raw = env.get("PORT", "")
        timeout_raw = env.get("AGENT_TIMEOUT", "")
        override = env.get("AGENT_CONFIG")
        return cls(
            telegram_token=env["TELEGRAM_BOT_TOKEN"],
            openai_api_key=env["OPENAI_API_KEY"],
            supabase_url=env["SUPABASE_URL"],
            supabase_key=env["SUPABASE_SERVICE_KEY"],
            privy_app_id=env["PRIVY_APP_ID"],
            privy_app_secret=env["PRIVY_APP_SECRET"],
            rpc_url=env.get("RPC_URL") or cls.rpc_url,
            model=env.get("MODEL") or None,
            image_model=env.get("IMAGE_MODEL") or DEFAULT_IMAGE_MODEL,
            pinata_jwt=env.get("PINATA_JWT") or None,
            pinata_api_url=env.get("PINATA_API_URL") or PINATA_API_URL,
            port=int(port_raw) if port_raw.isdigit() else 3007,
            output_dir=Path(env.get("OUTPUT_DIR") or "generated_images"),
            agent_timeout=float(timeout_raw) if timeout_raw.replace(".", "", 1).isdigit() else DEFAULT_AGENT_TIMEOUT,
            agent_config_override=Path(override) if override else None,
            solana_caip2=env.get("SOLANA_CAIP2") or SOLANA_MAINNET_CAIP2,
        )
