"""Mempool tools: fees, blocks, transactions and mining pools from mempool.space."""
import logging
from typing import Any, Dict, List

from ..http import fetch_json, fetch_text
from ..registry import register_tool, ToolResult, ToolParam

logger = logging.getLogger(__name__)

MEMPOOL_URL = "https://mempool.space/api"


async def fetch_mempool_stats() -> Dict[str, Any]:
    return await fetch_json(f"{MEMPOOL_URL}/mempool", "Failed to fetch mempool stats")


async def fetch_fee_estimates() -> Dict[str, Any]:
    return await fetch_json(f"{MEMPOOL_URL}/v1/fees/recommended", "Failed to fetch fee estimates")


async def fetch_tip_height() -> int:
    text = await fetch_text(f"{MEMPOOL_URL}/blocks/tip/height", "Failed to fetch latest blocks")
    try:
        return int(text)
    except ValueError:
        raise ValueError(f"Unexpected tip height: {text[:32]!r}")


async def fetch_latest_blocks(start_height: int) -> List[Dict[str, Any]]:
    return await fetch_json(f"{MEMPOOL_URL}/v1/blocks/{start_height}", "Failed to fetch latest blocks")


async def fetch_block_by_height(height: int) -> Dict[str, Any]:
    block_hash = await fetch_text(f"{MEMPOOL_URL}/block-height/{height}", "Failed to fetch block hash")
    return await fetch_json(f"{MEMPOOL_URL}/block/{block_hash}", "Failed to fetch block")


async def fetch_transaction(txid: str) -> Dict[str, Any]:
    return await fetch_json(f"{MEMPOOL_URL}/tx/{txid}", "Failed to fetch transaction")


async def fetch_mining_pools() -> List[Dict[str, Any]]:
    payload = await fetch_json(f"{MEMPOOL_URL}/v1/mining/pools/1w", "Failed to fetch mining pools")
    return payload.get("pools") or []


@register_tool(
    "getFeeEstimates",
    description="Get current recommended Bitcoin transaction fee rates",
    display_name="⛽ Bitcoin Fee Estimates",
    category="mempool",
)
async def get_fee_estimates(session=None, **kwargs) -> ToolResult:
    return ToolResult(data=await fetch_fee_estimates())


@register_tool(
    "getMempoolStats",
    description="Get the current Bitcoin mempool backlog: transaction count, virtual size and total fees",
    display_name="🧮 Mempool Stats",
    category="mempool",
)
async def get_mempool_stats(session=None, **kwargs) -> ToolResult:
    return ToolResult(data=await fetch_mempool_stats())


@register_tool(
    "getLatestBlocks",
    description="Get the most recently mined Bitcoin blocks",
    display_name="🔄 Latest Bitcoin Blocks",
    category="mempool",
)
async def get_latest_blocks(session=None, **kwargs) -> ToolResult:
    tip = await fetch_tip_height()
    return ToolResult(data=await fetch_latest_blocks(tip))


@register_tool(
    "getBlockByHeight",
    description="Get detailed data about a specific Bitcoin block by its height",
    params=[ToolParam("height", type="integer", description="block height", minimum=0)],
    display_name="📦 Bitcoin block data",
    category="mempool",
)
async def get_block_by_height(height: int, session=None, **kwargs) -> ToolResult:
    return ToolResult(data=await fetch_block_by_height(height))


@register_tool(
    "getTransaction",
    description="Get detailed information about a specific Bitcoin transaction",
    params=[
        ToolParam(
            "txid",
            description="64 character hex transaction id",
            pattern=r"^[a-fA-F0-9]{64}$",
            pattern_message="Invalid transaction ID",
        ),
    ],
    display_name="📝 Bitcoin Transaction",
    category="mempool",
)
async def get_transaction(txid: str, session=None, **kwargs) -> ToolResult:
    return ToolResult(data=await fetch_transaction(txid))


@register_tool(
    "getMiningPools",
    description="Returns a list of all known mining pools ordered by blocks found over the specified trailing 1w",
    display_name="⛏️ Bitcoin Mining Pools",
    category="mempool",
)
async def get_mining_pools(session=None, **kwargs) -> ToolResult:
    return ToolResult(data=await fetch_mining_pools())
