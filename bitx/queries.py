"""Database helpers for conversations, messages, actions, users and usage.

Read and create helpers log failures and return ``None`` / ``[]`` so a
storage hiccup never breaks a streamed chat reply. Conversation deletion is
the exception: it re-raises so the route can report the failure.
"""
import datetime
import logging
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from .models import Action, Conversation, Message, Payment, TokenStat, User, Wallet, utcnow

logger = logging.getLogger(__name__)


# ── Conversations ─────────────────────────────────────────────

async def db_get_conversation(db: AsyncSession, conversation_id: str) -> Optional[Conversation]:
    try:
        return await db.get(Conversation, conversation_id)
    except SQLAlchemyError as e:
        logger.error(f"[DB Error] Failed to get conversation {conversation_id}: {e}")
        return None


async def db_create_conversation(
    db: AsyncSession, conversation_id: str, user_id: int, title: str,
) -> Optional[Conversation]:
    try:
        conversation = Conversation(id=conversation_id, user_id=user_id, title=title[:128])
        db.add(conversation)
        await db.commit()
        return conversation
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[DB Error] Failed to create conversation {conversation_id} (user={user_id}): {e}")
        return None


async def db_get_conversations(db: AsyncSession, user_id: int) -> List[Conversation]:
    try:
        result = await db.execute(
            select(Conversation)
            .where(Conversation.user_id == user_id)
            .order_by(Conversation.created_at.desc())
        )
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"[DB Error] Failed to get conversations for user {user_id}: {e}")
        return []


async def db_rename_conversation(
    db: AsyncSession, conversation_id: str, user_id: int, title: str,
) -> Optional[Conversation]:
    result = await db.execute(
        select(Conversation).where(Conversation.id == conversation_id, Conversation.user_id == user_id)
    )
    conversation = result.scalar_one_or_none()
    if not conversation:
        return None
    conversation.title = title
    await db.commit()
    return conversation


async def db_delete_conversation(db: AsyncSession, conversation_id: str, user_id: int) -> bool:
    """Delete a conversation with its actions and messages in one transaction.

    Returns False when the conversation does not exist or belongs to another user.
    """
    try:
        result = await db.execute(
            select(Conversation).where(Conversation.id == conversation_id, Conversation.user_id == user_id)
        )
        conversation = result.scalar_one_or_none()
        if not conversation:
            return False
        await db.execute(delete(Action).where(Action.conversation_id == conversation_id))
        await db.execute(delete(Message).where(Message.conversation_id == conversation_id))
        await db.delete(conversation)
        await db.commit()
        return True
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[DB Error] Failed to delete conversation {conversation_id} (user={user_id}): {e}")
        raise


# ── Messages ──────────────────────────────────────────────────

async def db_create_messages(db: AsyncSession, messages: List[Dict[str, Any]]) -> Optional[List[Message]]:
    """Bulk-insert transcript messages; each dict carries conversation_id, role,
    content and optionally tool_invocations / attachments."""
    try:
        base = utcnow()
        rows = []
        for i, m in enumerate(messages):
            # Distinct timestamps keep insertion order stable under ORDER BY created_at
            row = Message(
                conversation_id=m["conversation_id"],
                role=m["role"],
                content=m.get("content") or "",
                tool_invocations=m.get("tool_invocations") or None,
                attachments=m.get("attachments") or None,
                created_at=base + datetime.timedelta(microseconds=i),
            )
            if m.get("id"):
                row.id = m["id"]
            rows.append(row)
        db.add_all(rows)
        await db.commit()
        return rows
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[DB Error] Failed to create messages (count={len(messages)}): {e}")
        return None


async def db_get_conversation_messages(db: AsyncSession, conversation_id: str) -> Optional[List[Message]]:
    try:
        result = await db.execute(
            select(Message)
            .where(Message.conversation_id == conversation_id)
            .order_by(Message.created_at.asc())
        )
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"[DB Error] Failed to get messages for conversation {conversation_id}: {e}")
        return None


async def db_update_tool_invocations(db: AsyncSession, message_id: str, tool_invocations: list) -> bool:
    """Overwrite the stored tool invocations of one message (after a tool-update merge)."""
    message = await db.get(Message, message_id)
    if not message:
        return False
    # Assign a fresh list so the JSON column registers the change
    message.tool_invocations = [dict(inv) for inv in tool_invocations]
    await db.commit()
    return True


# ── Actions ───────────────────────────────────────────────────

async def db_get_actions(
    db: AsyncSession, triggered: bool, paused: bool, completed: bool,
) -> List[Action]:
    try:
        result = await db.execute(
            select(Action)
            .where(Action.triggered == triggered, Action.paused == paused, Action.completed == completed)
            .order_by(Action.created_at.desc())
            .options(selectinload(Action.user).selectinload(User.wallets))
        )
        return list(result.scalars().all())
    except SQLAlchemyError as e:
        logger.error(f"[DB Error] Failed to get actions: {e}")
        return []


async def db_create_action(db: AsyncSession, **fields) -> Optional[Action]:
    try:
        action = Action(**fields)
        db.add(action)
        await db.commit()
        await db.refresh(action)
        return action
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[DB Error] Failed to create action: {e}")
        return None


# ── Usage ─────────────────────────────────────────────────────

async def db_create_token_stat(
    db: AsyncSession,
    user_id: int,
    message_ids: Iterable[str],
    prompt_tokens: int,
    completion_tokens: int,
    total_tokens: int,
) -> Optional[TokenStat]:
    try:
        stat = TokenStat(
            user_id=user_id,
            message_ids=list(message_ids),
            prompt_tokens=prompt_tokens,
            completion_tokens=completion_tokens,
            total_tokens=total_tokens,
        )
        db.add(stat)
        await db.commit()
        return stat
    except SQLAlchemyError as e:
        await db.rollback()
        logger.error(f"[DB Error] Failed to create token stats for user {user_id}: {e}")
        return None


# ── Users ─────────────────────────────────────────────────────

async def db_get_user_by_privy_id(db: AsyncSession, privy_id: str) -> Optional[User]:
    result = await db.execute(
        select(User).where(User.privy_id == privy_id).options(selectinload(User.wallets))
    )
    return result.scalar_one_or_none()


async def db_get_or_create_user(db: AsyncSession, privy_id: str, free_messages: int) -> User:
    user = await db_get_user_by_privy_id(db, privy_id)
    if user:
        return user
    user = User(privy_id=privy_id, free_messages_remaining=free_messages)
    db.add(user)
    await db.commit()
    logger.info(f"User created for privy id {privy_id} (id={user.id})")
    return await db_get_user_by_privy_id(db, privy_id)


async def db_add_wallet(
    db: AsyncSession, user: User, public_key: str, name: str = "Default", provider: str = "",
) -> Wallet:
    for wallet in user.wallets:
        if wallet.public_key == public_key:
            wallet.name = name or wallet.name
            wallet.provider = provider or wallet.provider
            await db.commit()
            return wallet
    wallet = Wallet(owner_id=user.id, public_key=public_key, name=name, provider=provider)
    db.add(wallet)
    await db.commit()
    await db.refresh(user, attribute_names=["wallets"])
    return wallet


async def db_update_early_access(db: AsyncSession, user: User) -> User:
    user.early_access = True
    await db.commit()
    return user


async def db_decrease_free_messages(db: AsyncSession, user_id: int) -> Optional[int]:
    """Spend one free message unless the user is subscribed or already at zero.

    Returns the remaining count, or None when the user does not exist.
    """
    user = await db.get(User, user_id)
    if not user:
        return None
    if user.has_active_subscription():
        return user.free_messages_remaining
    if user.free_messages_remaining <= 0:
        return 0
    user.free_messages_remaining -= 1
    await db.commit()
    return user.free_messages_remaining


async def db_get_payment(db: AsyncSession, transaction_id: str) -> Optional[Payment]:
    result = await db.execute(select(Payment).where(Payment.transaction_id == transaction_id))
    return result.scalar_one_or_none()


async def db_update_subscription(
    db: AsyncSession,
    user: User,
    plan: str,
    duration: datetime.timedelta,
    transaction_id: str,
    amount_btc: float,
    provider: str = "",
) -> User:
    """Record the payment and extend the subscription from max(now, current expiry)."""
    now = utcnow()
    start = user.subscription_expiry if user.subscription_expiry and user.subscription_expiry > now else now
    user.subscription_plan = plan
    user.subscription_expiry = start + duration
    db.add(Payment(
        user_id=user.id,
        transaction_id=transaction_id,
        plan=plan,
        amount_btc=amount_btc,
        provider=provider,
    ))
    await db.commit()
    logger.info(f"Subscription {plan} for user {user.id} until {user.subscription_expiry:%Y-%m-%d}")
    return user
