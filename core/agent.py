import asyncio
import base64
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

import aiohttp
import yaml
from openai import AsyncOpenAI

from .wallets import WalletService

log = logging.getLogger(__name__)

DEFAULT_AGENT_TIMEOUT = 30.0
DEFAULT_MAX_STEPS = 5
LAMPORTS_PER_SOL = 1_000_000_000
TOKEN_PROGRAM_ID = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"

TIMEOUT_REPLY = "I'm sorry, the operation took too long and timed out. Please try again."
EMPTY_REPLY = "I apologize, but I couldn't generate a response."

# capability names handlers ask about
CAP_WALLET_ADDRESS = "wallet_address"
CAP_SOL_BALANCE = "sol_balance"
CAP_TOKEN_BALANCES = "token_balances"
CAP_SIGN_MESSAGE = "sign_message"
CAP_MINT_NFT = "mint_nft"
CAP_CREATE_COLLECTION = "create_collection"

ToolHandler = Callable[[str, Dict[str, Any]], Awaitable[Any]]


@dataclass
class Tool:
    name: str
    capability: str
    description: str
    handler: ToolHandler
    parameters: Dict[str, Any] = field(
        default_factory=lambda: {"type": "object", "properties": {}, "required": []}
    )

    def schema(self) -> dict:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class Toolkit:
    """Named tools the agent may call; the capability set is the union of their capabilities."""

    def __init__(self) -> None:
        self._tools: Dict[str, Tool] = {}

    def register(self, tool: Tool) -> "Toolkit":
        self._tools[tool.name] = tool
        return self

    def extend(self, tools: List[Tool]) -> "Toolkit":
        for tool in tools:
            self.register(tool)
        return self

    @property
    def capabilities(self) -> FrozenSet[str]:
        return frozenset(tool.capability for tool in self._tools.values())

    def schemas(self) -> List[dict]:
        return [tool.schema() for tool in self._tools.values()]

    async def call(self, name: str, user_id: str, arguments: Dict[str, Any]) -> Any:
        tool = self._tools.get(name)
        if tool is None:
            return {"status": "error", "message": f"unknown tool {name}"}
        try:
            result = await tool.handler(user_id, arguments)
        except Exception as exc:
            log.warning("Tool %s failed for %s: %s", name, user_id, exc)
            return {"status": "error", "message": str(exc)}
        return {"status": "success", "result": result}


class SolanaRpc:
    def __init__(self, url: str, *, timeout: float = 20.0) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def call(self, method: str, params: List[Any]) -> Any:
        payload = {"jsonrpc": "2.0", "id": 1, "method": method, "params": params}
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.post(self.url, json=payload) as resp:
                resp.raise_for_status()
                body = await resp.json()
        if body.get("error"):
            raise RuntimeError(f"{method}: {body['error'].get('message', body['error'])}")
        return body.get("result")

    async def get_balance(self, address: str) -> float:
        result = await self.call("getBalance", [address])
        return int(result["value"]) / LAMPORTS_PER_SOL

    async def latest_blockhash(self) -> str:
        result = await self.call("getLatestBlockhash", [{"commitment": "finalized"}])
        return result["value"]["blockhash"]

    async def get_token_balances(self, address: str) -> List[dict]:
        result = await self.call(
            "getTokenAccountsByOwner",
            [address, {"programId": TOKEN_PROGRAM_ID}, {"encoding": "jsonParsed"}],
        )
        balances = []
        for account in result.get("value", []):
            info = account["account"]["data"]["parsed"]["info"]
            amount = info.get("tokenAmount") or {}
            balances.append({"mint": info.get("mint"), "amount": amount.get("uiAmountString")})
        return balances


def solana_tools(wallets: WalletService, rpc: SolanaRpc) -> List[Tool]:
    async def wallet_address(user_id: str, _args: Dict[str, Any]) -> str:
        wallet = await wallets.get_or_create_wallet(user_id)
        return wallet.address

    async def sol_balance(user_id: str, args: Dict[str, Any]) -> dict:
        address = args.get("address") or (await wallets.get_or_create_wallet(user_id)).address
        return {"address": address, "sol": await rpc.get_balance(address)}

    async def token_balances(user_id: str, args: Dict[str, Any]) -> dict:
        address = args.get("address") or (await wallets.get_or_create_wallet(user_id)).address
        return {"address": address, "tokens": await rpc.get_token_balances(address)}

    async def sign_message(user_id: str, args: Dict[str, Any]) -> dict:
        wallet = await wallets.get_or_create_wallet(user_id)
        message = str(args.get("message") or "")
        encoded = base64.b64encode(message.encode("utf-8")).decode("ascii")
        signature = await wallets.privy.sign_message(wallet.wallet_id, encoded)
        return {"address": wallet.address, "signature": signature}

    address_param = {
        "type": "object",
        "properties": {
            "address": {
                "type": "string",
                "description": "Base-58 Solana address; defaults to the user's wallet.",
            }
        },
        "required": [],
    }
    return [
        Tool(
            name="get_wallet_address",
            capability=CAP_WALLET_ADDRESS,
            description="Return the Solana address of the user's custodial wallet.",
            handler=wallet_address,
        ),
        Tool(
            name="get_sol_balance",
            capability=CAP_SOL_BALANCE,
            description="Return the SOL balance of an address.",
            handler=sol_balance,
            parameters=address_param,
        ),
        Tool(
            name="get_token_balances",
            capability=CAP_TOKEN_BALANCES,
            description="List SPL token balances held by an address.",
            handler=token_balances,
            parameters=address_param,
        ),
        Tool(
            name="sign_message",
            capability=CAP_SIGN_MESSAGE,
            description="Sign a UTF-8 message with the user's wallet.",
            handler=sign_message,
            parameters={
                "type": "object",
                "properties": {"message": {"type": "string"}},
                "required": ["message"],
            },
        ),
    ]


@dataclass
class AgentSettings:
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_steps: int = DEFAULT_MAX_STEPS
    system_prompt: str = ""

    @classmethod
    def load(
        cls, path: Path, override_path: Optional[Path] = None, *, model: Optional[str] = None
    ) -> "AgentSettings":
        """Read the bundled YAML, then the override YAML on top of it.

        An explicit ``model`` wins over both files.
        """
        data: Dict[str, Any] = {}
        for candidate in (path, override_path):
            if not candidate or not candidate.exists():
                continue
            try:
                raw = yaml.safe_load(candidate.read_text(encoding="utf-8"))
            except Exception as exc:
                log.warning("failed to read agent config %s: %s", candidate, exc)
                continue
            if isinstance(raw, dict):
                data.update({str(k).strip().lower(): v for k, v in raw.items()})
        system = data.get("system") or []
        if isinstance(system, str):
            system = [system]
        prompt = "\n".join(" ".join(str(line).split()) for line in system if str(line or "").strip())
        return cls(
            model=model or str(data.get("model") or cls.model),
            temperature=float(data.get("temperature", cls.temperature)),
            max_steps=int(data.get("max_steps", cls.max_steps)),
            system_prompt=prompt,
        )


class ChatAgent:
    """LLM agent that answers free text and runs wallet tools on the user's behalf."""

    def __init__(
        self,
        client: AsyncOpenAI,
        toolkit: Toolkit,
        settings: AgentSettings,
        *,
        timeout: float = DEFAULT_AGENT_TIMEOUT,
    ) -> None:
        self.client = client
        self.toolkit = toolkit
        self.settings = settings
        self.timeout = timeout

    def capabilities(self) -> FrozenSet[str]:
        return self.toolkit.capabilities

    def supports(self, capability: str) -> bool:
        return capability in self.toolkit.capabilities

    async def respond(self, user_id: str, message: str) -> str:
        try:
            return await asyncio.wait_for(self._run(user_id, message), timeout=self.timeout)
        except asyncio.TimeoutError:
            log.warning("Agent call for %s timed out after %.0fs", user_id, self.timeout)
            return TIMEOUT_REPLY

    async def _run(self, user_id: str, message: str) -> str:
        messages: List[dict] = []
        if self.settings.system_prompt:
            messages.append({"role": "system", "content": self.settings.system_prompt})
        messages.append({"role": "user", "content": message})
        tools = self.toolkit.schemas()
        for step in range(self.settings.max_steps):
            params: Dict[str, Any] = {
                "model": self.settings.model,
                "messages": messages,
                "temperature": self.settings.temperature,
            }
            if tools:
                params["tools"] = tools
            response = await self.client.chat.completions.create(**params)
            reply = response.choices[0].message
            tool_calls = reply.tool_calls or []
            if not tool_calls:
                return (reply.content or "").strip() or EMPTY_REPLY
            messages.append(
                {
                    "role": "assistant",
                    "content": reply.content,
                    "tool_calls": [
                        {
                            "id": call.id,
                            "type": "function",
                            "function": {
                                "name": call.function.name,
                                "arguments": call.function.arguments,
                            },
                        }
                        for call in tool_calls
                    ],
                }
            )
            for call in tool_calls:
                try:
                    arguments = json.loads(call.function.arguments or "{}")
                except json.JSONDecodeError:
                    arguments = {}
                log.info("Agent step %d for %s: %s(%s)", step + 1, user_id, call.function.name, arguments)
                result = await self.toolkit.call(call.function.name, user_id, arguments)
                messages.append(
                    {
                        "role": "tool",
                        "tool_call_id": call.id,
                        "content": json.dumps(result, ensure_ascii=False, default=str),
                    }
                )
        log.warning("Agent for %s hit the %d step limit", user_id, self.settings.max_steps)
        return EMPTY_REPLY
