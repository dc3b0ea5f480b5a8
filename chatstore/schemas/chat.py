from datetime import datetime
from typing import Literal

from pydantic import BaseModel

MessageRole = Literal["user", "model"]


class ConversationOut(BaseModel):
    id: int
    title: str
    created_at: datetime
    updated_at: datetime
    message_count: int = 0
    total_tokens: int = 0

    class Config:
        from_attributes = True


class MessageOut(BaseModel):
    id: int
    conversation_id: int
    role: MessageRole
    # Always plaintext; envelopes never leave the store.
    content: str
    created_at: datetime
    token_count: int = 0
