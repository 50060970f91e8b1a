import asyncio
import logging
import signal
from pathlib import Path

from dotenv import load_dotenv
from openai import AsyncOpenAI

from core.agent import AgentSettings, ChatAgent, SolanaRpc, Toolkit, solana_tools
from core.handlers import BotHandlers
from core.images import ImageGenerator
from core.nft import CoreMinter, nft_tools
from core.pinning import PinataClient
from core.router import CommandRouter
from core.session import SessionStore
from core.settings import Settings
from core.storage import SupabaseStore
from core.wallets import PrivyClient, WalletService
from transports.health import HealthServer
from transports.telegram_bot import TelegramTransport

AGENT_CONFIG_PATH = Path(__file__).parent / "core" / "agent_config.yaml"

log = logging.getLogger(__name__)


def build_agent(
    settings: Settings, openai_client: AsyncOpenAI, wallets: WalletService, pinata: PinataClient
) -> ChatAgent:
    # MODEL from the environment wins over the override YAML, which wins over the bundled YAML
    agent_settings = AgentSettings.load(AGENT_CONFIG_PATH, settings.agent_config_override, model=settings.model)
    rpc = SolanaRpc(settings.rpc_url)
    minter = CoreMinter(wallets.privy, rpc, caip2=settings.solana_caip2)
    toolkit = Toolkit().extend(solana_tools(wallets, rpc)).extend(nft_tools(wallets, minter, pinata))
    return ChatAgent(openai_client, toolkit, agent_settings, timeout=settings.agent_timeout)


async def main():
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s :: %(message)s")

    settings = Settings.from_env()

    openai_client = AsyncOpenAI(api_key=settings.openai_api_key)
    store = SupabaseStore(url=settings.supabase_url, service_key=settings.supabase_key)
    privy = PrivyClient(app_id=settings.privy_app_id, app_secret=settings.privy_app_secret)
    wallets = WalletService(privy, store)
    pinata = PinataClient(jwt=settings.pinata_jwt, api_url=settings.pinata_api_url)

    agent = build_agent(settings, openai_client, wallets, pinata)
    log.info("Agent model %s, capabilities: %s", agent.settings.model, ", ".join(sorted(agent.capabilities())))

    sessions = SessionStore()
    transport = TelegramTransport(settings.telegram_token)
    handlers = BotHandlers(
        delivery=transport,
        sessions=sessions,
        images=ImageGenerator(openai_client, model=settings.image_model, output_dir=settings.output_dir),
        store=store,
        wallets=wallets,
        agent=agent,
        pinata=pinata,
    )
    transport.bind(CommandRouter(handlers, sessions))

    health = HealthServer(settings.port)
    await health.start()

    stop_event = asyncio.Event()

    def _signal_handler(*_):
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _signal_handler)
        except NotImplementedError:
            signal.signal(sig, lambda *_: stop_event.set())

    telegram_task = asyncio.create_task(transport.start())

    await stop_event.wait()

    await transport.stop()
    await telegram_task
    await health.stop()
    await store.close()
    await privy.close()
    await openai_client.close()


if __name__ == "__main__":
    asyncio.run(main())
