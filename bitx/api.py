"""REST API routes: chat, conversations, users, wallets, subscriptions, prices, cron."""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import get_current_user, get_privy_id, verify_cron_secret
from .chat import ChatTurn, stream_chat_response
from .config import settings
from .confirmation import apply_tool_updates, resolve_pending_confirmation
from .database import get_db
from .llm import generate_title
from .models import User
from .protocol import data_part
from .queries import (
    db_add_wallet, db_create_conversation, db_create_messages, db_delete_conversation,
    db_get_conversation, db_get_conversation_messages, db_get_conversations, db_get_or_create_user,
    db_get_payment, db_rename_conversation, db_update_early_access, db_update_subscription,
    db_update_tool_invocations,
)
from .session import ChatSession
from .tools import enabled_tools
from .tools.builtin.bitcoin import ADDRESS_PATTERN, PRICE_HISTORY_DAYS, SATS_PER_BTC
from .tools.http import FetchError
from .transcript import merge_client_results, message_text, most_recent_user_message

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api")

# plan -> (price in BTC, duration)
PLANS = {
    "monthly": (0.0001, timedelta(days=30)),
    "semiannual": (0.0005, timedelta(days=182)),
    "annual": (0.0009, timedelta(days=365)),
}


# ── Pydantic schemas ──────────────────────────────────────────

class ChatRequest(BaseModel):
    id: str = Field(min_length=1, max_length=64)
    messages: Optional[List[Dict[str, Any]]] = None
    message: Optional[Dict[str, Any]] = None

class DeleteChatRequest(BaseModel):
    id: str

class ConversationOut(BaseModel):
    id: str
    title: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}

class RenameRequest(BaseModel):
    title: str = Field(min_length=1, max_length=100)

class WalletOut(BaseModel):
    id: int
    name: str
    public_key: str
    provider: str

    model_config = {"from_attributes": True}

class UserOut(BaseModel):
    id: int
    privy_id: str
    early_access: bool
    degen_mode: bool
    free_messages_remaining: int
    subscription_plan: Optional[str] = None
    subscription_expiry: Optional[datetime] = None
    wallets: List[WalletOut] = []

    model_config = {"from_attributes": True}

class UserUpdate(BaseModel):
    degen_mode: Optional[bool] = Field(None, alias="degenMode")

class WalletCreate(BaseModel):
    public_key: str = Field(alias="publicKey", pattern=ADDRESS_PATTERN)
    name: str = "Default"
    provider: str = ""

    @field_validator("public_key", mode="before")
    @classmethod
    def _lowercase_bech32(cls, value):
        # bech32 is case-insensitive but stored lowercase; base58 stays as given
        if isinstance(value, str) and value.strip().lower().startswith("bc1"):
            return value.strip().lower()
        return value

class SubscriptionRequest(BaseModel):
    plan: str
    transaction_id: str = Field(alias="transactionId", min_length=1, max_length=128)
    amount: float
    provider: str = ""


# ── Chat ──────────────────────────────────────────────────────

async def _persist_updates(db: AsyncSession, stored: List[Dict[str, Any]], updates: List[Dict[str, Any]]):
    """Apply tool updates to the stored transcript and write back every touched message."""
    touched = {u["toolCallId"] for u in updates}
    apply_tool_updates(stored, [dict(u) for u in updates])
    for message in stored:
        invocations = message.get("toolInvocations") or []
        if any(inv.get("toolCallId") in touched for inv in invocations):
            await db_update_tool_invocations(db, message["id"], invocations)


@router.post("/chat")
async def chat(
    req: ChatRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if not user.wallets:
        logger.error(f"[chat] No public key found for user {user.id}")
        raise HTTPException(status_code=400, detail="No public key found")
    if not user.has_active_subscription() and user.free_messages_remaining <= 0:
        raise HTTPException(status_code=402, detail="No free messages remaining")

    conversation = await db_get_conversation(db, req.id)
    if conversation and conversation.user_id != user.id:
        raise HTTPException(status_code=404, detail="Conversation not found")

    stored: List[Dict[str, Any]] = []
    if conversation:
        stored = [m.to_dict() for m in await db_get_conversation_messages(db, req.id) or []]

    if req.messages is not None:
        transcript = [dict(m) for m in req.messages]
    elif req.message is not None:
        transcript = stored + [dict(req.message)]
    else:
        transcript = []

    user_message = most_recent_user_message(transcript)
    if not user_message:
        raise HTTPException(status_code=400, detail="No user message found")

    if not conversation:
        title = await generate_title(message_text(user_message))
        await db_create_conversation(db, req.id, user.id, title)
        logger.info(f"[chat] Conversation {req.id} created: '{title}'")

    # Results the client attached to earlier tool invocations
    updates = merge_client_results(stored, transcript)
    if updates:
        await _persist_updates(db, stored, updates)

    # A text reply right after an open confirmation request answers it
    prelude = []
    confirmation = await resolve_pending_confirmation(transcript)
    if confirmation:
        await _persist_updates(db, stored, [confirmation])
        prelude.append(data_part([confirmation]))

    stored_ids = {m.get("id") for m in stored}
    user_message_id = user_message.get("id")
    if not user_message_id or user_message_id not in stored_ids:
        rows = await db_create_messages(db, [{
            "id": user_message_id,
            "conversation_id": req.id,
            "role": "user",
            "content": message_text(user_message),
            "attachments": user_message.get("experimental_attachments"),
        }])
        if rows:
            user_message_id = rows[0].id

    session = ChatSession.for_user(user, req.id)
    turn = ChatTurn(session, transcript)
    return StreamingResponse(
        stream_chat_response(turn, prelude=prelude, user_message_id=user_message_id),
        media_type="text/plain; charset=utf-8",
        headers={"x-vercel-ai-data-stream": "v1"},
    )


@router.delete("/chat")
async def delete_chat(
    req: DeleteChatRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    try:
        deleted = await db_delete_conversation(db, req.id, user.id)
    except Exception as e:
        logger.error(f"[chat] Delete error: {e}")
        raise HTTPException(status_code=500, detail="Internal Server Error")
    if not deleted:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


@router.get("/chat/{conversation_id}")
async def get_chat_messages(
    conversation_id: str,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversation = await db_get_conversation(db, conversation_id)
    if not conversation or conversation.user_id != user.id:
        raise HTTPException(status_code=404, detail="Conversation messages not found")
    messages = await db_get_conversation_messages(db, conversation_id)
    if not messages:
        raise HTTPException(status_code=404, detail="Conversation messages not found")
    return [m.to_dict() for m in messages]


# ── Conversations ─────────────────────────────────────────────

@router.get("/conversations", response_model=List[ConversationOut])
async def list_conversations(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await db_get_conversations(db, user.id)


@router.patch("/conversations/{conversation_id}", response_model=ConversationOut)
async def rename_conversation(
    conversation_id: str,
    req: RenameRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    conversation = await db_rename_conversation(db, conversation_id, user.id, req.title.strip())
    if not conversation:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conversation


# ── Cron ──────────────────────────────────────────────────────

@router.get("/cron/15-min", dependencies=[Depends(verify_cron_secret)])
async def cron_quarter_hour():
    from .scheduler import run_due_actions
    processed = await run_due_actions()
    logger.info(f"[cron] Processed {len(processed)} action(s)")
    return {"success": True, "processed": processed}


# ── Users & wallets ───────────────────────────────────────────

@router.get("/user", response_model=UserOut)
async def get_user(
    privy_id: str = Depends(get_privy_id),
    db: AsyncSession = Depends(get_db),
):
    return await db_get_or_create_user(db, privy_id, settings.free_messages)


@router.put("/user", response_model=UserOut)
async def update_user(
    req: Optional[UserUpdate] = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    if req is not None and req.degen_mode is not None:
        user.degen_mode = req.degen_mode
    return await db_update_early_access(db, user)


@router.post("/wallets", response_model=WalletOut, status_code=201)
async def add_wallet(
    req: WalletCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    wallet = await db_add_wallet(db, user, req.public_key, name=req.name, provider=req.provider)
    logger.info(f"Wallet {req.public_key[:8]}… linked to user {user.id} ({req.provider or 'unknown'})")
    return wallet


# ── Subscriptions ─────────────────────────────────────────────

async def verify_payment(transaction_id: str, amount_btc: float) -> bool:
    """Check on mempool.space that the transaction pays the receive address at least ``amount_btc``."""
    from .tools.builtin.mempool import fetch_transaction
    try:
        tx = await fetch_transaction(transaction_id)
    except FetchError as e:
        logger.warning(f"Payment {transaction_id} lookup failed: {e}")
        return False
    paid = sum(
        out.get("value", 0) for out in tx.get("vout", [])
        if out.get("scriptpubkey_address") == settings.receive_wallet_address
    )
    return paid >= round(amount_btc * SATS_PER_BTC)


@router.put("/subscriptions", response_model=UserOut)
async def update_subscription(
    req: SubscriptionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    plan = PLANS.get(req.plan)
    if not plan:
        raise HTTPException(status_code=400, detail=f"Unknown plan: {req.plan}")
    price, duration = plan
    if req.amount < price:
        raise HTTPException(status_code=400, detail=f"Amount below the {req.plan} price of {price} BTC")
    if await db_get_payment(db, req.transaction_id):
        raise HTTPException(status_code=409, detail="Transaction already used")
    if settings.verify_payments and not await verify_payment(req.transaction_id, price):
        raise HTTPException(status_code=400, detail="Payment could not be verified")

    return await db_update_subscription(
        db, user, req.plan, duration, req.transaction_id, req.amount, provider=req.provider,
    )


# ── Prices & tools ────────────────────────────────────────────

@router.get("/price")
async def bitcoin_price():
    from .tools.builtin.bitcoin import get_bitcoin_price
    try:
        return await get_bitcoin_price()
    except (FetchError, ValueError) as e:
        logger.warning(f"Price lookup failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/price/history")
async def bitcoin_price_history(timeframe: str = Query("24h")):
    from .tools.builtin.bitcoin import get_bitcoin_price_history
    if timeframe not in PRICE_HISTORY_DAYS:
        raise HTTPException(status_code=400, detail=f"Unsupported timeframe: {timeframe}")
    try:
        return await get_bitcoin_price_history(timeframe)
    except FetchError as e:
        logger.warning(f"Price history lookup failed: {e}")
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/tools")
async def list_tools():
    return [tool.metadata() for tool in enabled_tools().values()]
