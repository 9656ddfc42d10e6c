"""Per-request chat session state handed to tools."""
import time
import uuid
from dataclasses import dataclass, field
from typing import Optional


@dataclass
class ChatSession:
    """Who is chatting and where; injected into every tool call as ``session``."""
    user_id: int
    conversation_id: str
    public_key: Optional[str] = None  # first linked Bitcoin address
    degen_mode: bool = False
    request_id: str = field(default_factory=lambda: str(uuid.uuid4())[:8])
    started_at: float = field(default_factory=time.monotonic)

    def elapsed(self) -> float:
        """Seconds since the request started."""
        return time.monotonic() - self.started_at

    @classmethod
    def for_user(cls, user, conversation_id: str, degen_mode: Optional[bool] = None) -> "ChatSession":
        wallet = user.wallets[0] if user.wallets else None
        return cls(
            user_id=user.id,
            conversation_id=conversation_id,
            public_key=wallet.public_key if wallet else None,
            degen_mode=bool(user.degen_mode) if degen_mode is None else degen_mode,
        )
