"""Bitcoin wallet tools: price via CoinGecko, balances and assets via Ordiscan."""
import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List

from ...config import settings
from ..http import fetch_json
from ..registry import register_tool, ToolResult, ToolParam

logger = logging.getLogger(__name__)

COINGECKO_URL = "https://api.coingecko.com/api/v3"
ORDISCAN_URL = "https://api.ordiscan.com/v1"
SATS_PER_BTC = 100_000_000

ADDRESS_PATTERN = r"^([13][a-km-zA-HJ-NP-Z1-9]{25,34}|bc1[a-z0-9]{39,59})$"

PRICE_HISTORY_DAYS = {"24h": 1, "7d": 7, "30d": 30, "90d": 90}


def _address_param() -> ToolParam:
    return ToolParam(
        "address",
        description="Bitcoin address (legacy 1/3 or bech32 bc1)",
        pattern=ADDRESS_PATTERN,
        pattern_message="Invalid Bitcoin address",
    )


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# ── API helpers ───────────────────────────────────────────────

async def get_bitcoin_price() -> Dict[str, Any]:
    data = await fetch_json(
        f"{COINGECKO_URL}/simple/price",
        "Failed to fetch Bitcoin price",
        params={"ids": "bitcoin", "vs_currencies": "usd", "include_24hr_change": "true"},
    )
    btc = data.get("bitcoin") or {}
    if "usd" not in btc:
        raise ValueError("Bitcoin price missing from CoinGecko response")
    return {
        "price": btc["usd"],
        "change24h": btc.get("usd_24h_change"),
        "lastUpdated": _now_iso(),
        "source": "CoinGecko",
    }


async def get_bitcoin_price_history(timeframe: str) -> List[Dict[str, Any]]:
    days = PRICE_HISTORY_DAYS.get(timeframe)
    if days is None:
        raise ValueError(f"Unsupported timeframe: {timeframe}")
    data = await fetch_json(
        f"{COINGECKO_URL}/coins/bitcoin/market_chart",
        "Failed to fetch Bitcoin price history",
        params={"vs_currency": "usd", "days": days},
    )
    return [
        {
            "timestamp": datetime.fromtimestamp(ts / 1000, tz=timezone.utc).isoformat(),
            "price": price,
        }
        for ts, price in data.get("prices", [])
    ]


async def _ordiscan(address: str, resource: str, error: str) -> list:
    payload = await fetch_json(
        f"{ORDISCAN_URL}/address/{address}/{resource}",
        error,
        headers={"Authorization": f"Bearer {settings.ordiscan_api_key}"},
    )
    return payload.get("data") or []


async def fetch_wallet_utxos(address: str) -> list:
    return await _ordiscan(address, "utxos", "Failed to fetch UTXOs")


async def fetch_wallet_inscriptions(address: str) -> list:
    return await _ordiscan(address, "inscriptions", "Failed to fetch inscriptions")


async def fetch_wallet_runes(address: str) -> list:
    return await _ordiscan(address, "runes", "Failed to fetch runes")


async def fetch_wallet_brc20(address: str) -> list:
    return await _ordiscan(address, "brc20", "Failed to fetch BRC20 tokens")


def utxo_balance(utxos: list) -> int:
    """Total value of the UTXOs, in sats."""
    return sum(int(u.get("value", 0)) for u in utxos)


# ── Tools ─────────────────────────────────────────────────────

@register_tool(
    "getBitcoinPrice",
    description="Get the current price of Bitcoin (BTC) in USD",
    display_name="💰 Get Bitcoin Price",
    category="bitcoin",
    is_collapsible=True,
)
async def get_bitcoin_price_tool(session=None, **kwargs) -> ToolResult:
    return ToolResult(data=await get_bitcoin_price())


@register_tool(
    "getBitcoinBalance",
    description="Get the total BTC balance for an address",
    params=[_address_param()],
    display_name="💰 Bitcoin Balance",
    category="bitcoin",
    required_env=["ORDISCAN_API_KEY"],
)
async def get_bitcoin_balance(address: str, session=None, **kwargs) -> ToolResult:
    balance = utxo_balance(await fetch_wallet_utxos(address))
    return ToolResult(
        data={
            "address": address,
            "balance": balance,
            "balanceBTC": balance / SATS_PER_BTC,
            "lastUpdated": _now_iso(),
        },
        suppress_follow_up=True,
    )


@register_tool(
    "getBitcoinUTXOs",
    description="Get all UTXOs owned by an address",
    params=[_address_param()],
    display_name="📦 Bitcoin UTXOs",
    category="bitcoin",
    required_env=["ORDISCAN_API_KEY"],
)
async def get_bitcoin_utxos(address: str, session=None, **kwargs) -> ToolResult:
    utxos = await fetch_wallet_utxos(address)
    return ToolResult(data={"address": address, "utxos": utxos}, suppress_follow_up=True)


@register_tool(
    "getBitcoinInscriptions",
    description="Get all inscriptions owned by an address",
    params=[
        _address_param(),
        ToolParam("page", type="integer", description="result page", required=False, default=1, minimum=1),
    ],
    display_name="⦿ Bitcoin Inscriptions",
    category="bitcoin",
    required_env=["ORDISCAN_API_KEY"],
)
async def get_bitcoin_inscriptions(address: str, page: int = 1, session=None, **kwargs) -> ToolResult:
    inscriptions = await fetch_wallet_inscriptions(address)
    return ToolResult(data={"address": address, "inscriptions": inscriptions}, suppress_follow_up=True)


@register_tool(
    "getBitcoinBRC20",
    description="Get all BRC20 token balances for an address",
    params=[_address_param()],
    display_name="🏷️ BRC20 Tokens",
    category="bitcoin",
    required_env=["ORDISCAN_API_KEY"],
    is_collapsible=True,
)
async def get_bitcoin_brc20(address: str, session=None, **kwargs) -> ToolResult:
    brc20 = await fetch_wallet_brc20(address)
    return ToolResult(data={"address": address, "brc20": brc20}, suppress_follow_up=True)


@register_tool(
    "getBitcoinRunes",
    description="Get all Rune balances for an address",
    params=[_address_param()],
    display_name="▣ Runes",
    category="bitcoin",
    required_env=["ORDISCAN_API_KEY"],
    is_collapsible=True,
)
async def get_bitcoin_runes(address: str, session=None, **kwargs) -> ToolResult:
    runes = await fetch_wallet_runes(address)
    return ToolResult(data={"address": address, "runes": runes}, suppress_follow_up=True)


@register_tool(
    "getWalletPortfolio",
    description=(
        "Get detailed portfolio information for a wallet including BTC balance, "
        "UTXOs, inscriptions, BRC20 tokens, and Runes"
    ),
    params=[_address_param()],
    display_name="🏦 Wallet Portfolio",
    category="bitcoin",
    required_env=["ORDISCAN_API_KEY"],
)
async def get_wallet_portfolio(address: str, session=None, **kwargs) -> ToolResult:
    # Any failed fetch fails the whole portfolio
    utxos, inscriptions, brc20, runes = await asyncio.gather(
        fetch_wallet_utxos(address),
        fetch_wallet_inscriptions(address),
        fetch_wallet_brc20(address),
        fetch_wallet_runes(address),
    )
    return ToolResult(
        data={
            "address": address,
            "balance": utxo_balance(utxos),
            "utxos": utxos,
            "inscriptions": inscriptions,
            "brc20": brc20,
            "runes": runes,
            "lastUpdated": _now_iso(),
        },
        suppress_follow_up=True,
    )
