"""Magic Eden tools: ordinals collections and runes market data."""
import logging
import re
from typing import Dict, List

from ...config import settings
from ..http import fetch_json
from ..registry import register_tool, ToolResult, ToolParam

logger = logging.getLogger(__name__)

API_URL = "https://api-mainnet.magiceden.dev/v2/ord/btc"
STATS_URL = "https://stats-mainnet.magiceden.io"

TIME_RANGES = ["1h", "1d", "7d", "30d"]
RECENT_LIMIT = 10

COLLECTION_ACTIVITY_KINDS = [
    "buying_broadcasted",
    "offer_accepted_broadcasted",
    "coll_offer_fulfill_broadcasted",
    "list",
    "coll_offer_created",
    "coll_offer_edited",
    "delist",
    "transfer",
    "mint_broadcasted",
]

_POPULAR_COLLECTIONS_FILTER = '{"qc":{"isVerified":true,"minOwnerCount":30,"minTxns":5}}'
_POPULAR_RUNES_FILTER = '{"allCollections":true}'


def convert_rune_name_to_ticker(rune_name: str) -> str:
    """'DOG•GO•TO•THE•MOON' -> 'DOGGOTOTHEMOON'."""
    return re.sub(r"[•\s]", "", rune_name)


def _headers() -> Dict[str, str]:
    headers = {"accept": "application/json"}
    if settings.magic_eden_api_key:
        headers["Authorization"] = f"Bearer {settings.magic_eden_api_key}"
    return headers


def dedupe_collections(collections: List[dict]) -> List[dict]:
    """Drop repeated collections (same symbol), keeping the first occurrence."""
    seen = set()
    unique = []
    for c in collections:
        symbol = c.get("collectionSymbol")
        if symbol in seen:
            continue
        seen.add(symbol)
        unique.append(c)
    return unique


def _symbol_param(description: str) -> ToolParam:
    return ToolParam("symbol", description=description)


def _time_range_param() -> ToolParam:
    return ToolParam("timeRange", description="Time range for popularity metrics", enum=TIME_RANGES)


def _limit_param() -> ToolParam:
    return ToolParam("limit", type="integer", description="number of results", required=False,
                     default=RECENT_LIMIT, minimum=1, maximum=RECENT_LIMIT)


@register_tool(
    "getCollectionStats",
    description="Get detailed statistics for a collection including floor price, listed count, owners, and total volume.",
    params=[_symbol_param("The collection symbol/slug to check")],
    display_name="📊 Collection Stats",
    category="magic-eden",
)
async def get_collection_stats(symbol: str, session=None, **kwargs) -> ToolResult:
    data = await fetch_json(
        f"{API_URL}/stat",
        "Failed to fetch collection stats",
        params={"collectionSymbol": symbol},
        headers=_headers(),
    )
    return ToolResult(data=data, suppress_follow_up=True)


@register_tool(
    "getCollectionActivities",
    description="Get recent trading activities for a collection including bids, listings, and sales.",
    params=[_symbol_param("The collection symbol/slug to check")],
    display_name="📈 Collection Activities",
    category="magic-eden",
)
async def get_collection_activities(symbol: str, session=None, **kwargs) -> ToolResult:
    params = [("limit", 100), ("collectionSymbol", symbol)]
    params += [("kind[]", kind) for kind in COLLECTION_ACTIVITY_KINDS]
    payload = await fetch_json(
        f"{API_URL}/activities",
        "Failed to fetch collection activities",
        params=params,
        headers=_headers(),
    )
    activities = payload.get("activities") or []
    return ToolResult(data=activities[:RECENT_LIMIT], suppress_follow_up=True)


@register_tool(
    "getPopularCollections",
    description="Get the most popular collections on volume and activity.",
    params=[_time_range_param(), _limit_param()],
    display_name="🔥 Popular Collections",
    category="magic-eden",
)
async def get_popular_collections(timeRange: str, limit: int = RECENT_LIMIT, session=None, **kwargs) -> ToolResult:
    data = await fetch_json(
        f"{STATS_URL}/collection_stats/search/bitcoin",
        "Failed to fetch popular collections",
        params={
            "offset": 0,
            "window": timeRange,
            "limit": RECENT_LIMIT,
            "sort": "volume",
            "direction": "desc",
            "filter": _POPULAR_COLLECTIONS_FILTER,
        },
        headers=_headers(),
    )
    collections = dedupe_collections(data if isinstance(data, list) else [])
    return ToolResult(data=collections[:limit], suppress_follow_up=True, extra={"timeRange": timeRange})


@register_tool(
    "getRuneActivities",
    description="Get recent trading activities for a rune including bids, listings, and sales.",
    params=[_symbol_param("The rune name/symbol to check")],
    display_name="📈 Rune Activities",
    category="magic-eden",
)
async def get_rune_activities(symbol: str, session=None, **kwargs) -> ToolResult:
    payload = await fetch_json(
        f"{API_URL}/runes/orders/{convert_rune_name_to_ticker(symbol)}",
        "Failed to fetch rune activities",
        params={
            "offset": 0,
            "includePending": "false",
            "sort": "unitPriceAsc",
            "rbfPreventionListingOnly": "false",
            "side": "buy",
        },
        headers=_headers(),
    )
    orders = payload.get("orders") or []
    return ToolResult(data=orders[:RECENT_LIMIT], suppress_follow_up=True)


@register_tool(
    "getRuneStats",
    description="Get detailed statistics for a rune including floor price, listed count, owners, and total volume.",
    params=[_symbol_param("The rune name/symbol to check")],
    display_name="📊 Rune Stats",
    category="magic-eden",
)
async def get_rune_stats(symbol: str, session=None, **kwargs) -> ToolResult:
    data = await fetch_json(
        f"{API_URL}/runes/market/{convert_rune_name_to_ticker(symbol)}/info",
        "Failed to fetch rune stats",
        headers=_headers(),
    )
    return ToolResult(data=data, suppress_follow_up=True)


@register_tool(
    "getPopularRunes",
    description="Get the most popular runes on volume and activity.",
    params=[_time_range_param(), _limit_param()],
    display_name="🔥 Popular Runes",
    category="magic-eden",
)
async def get_popular_runes(timeRange: str, limit: int = RECENT_LIMIT, session=None, **kwargs) -> ToolResult:
    payload = await fetch_json(
        f"{API_URL}/runes/collection_stats/search",
        "Failed to fetch popular runes",
        params={
            "offset": 0,
            "limit": RECENT_LIMIT,
            "sort": "volume",
            "direction": "desc",
            "window": timeRange,
            "isVerified": "false",
            "filter": _POPULAR_RUNES_FILTER,
        },
        headers=_headers(),
    )
    runes = payload.get("runes") or []
    return ToolResult(data=runes[:limit], suppress_follow_up=True, extra={"timeRange": timeRange})
