# /autoreply/models/domain.py

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import Field, field_validator

from autoreply.models.config import CamelModel

# Core value types passed between ingestion, the decision engine and delivery.


class InboundMessage(CamelModel):
    """A normalized inbound message, already de-duplicated by the ingestion layer."""
    id: str = Field(..., min_length=1)
    conversation_id: str
    sender_address: str
    sender_display_name: Optional[str] = None
    text: str = ""
    received_at_utc: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), alias="receivedAtUTC")
    tenant_id: str

    @field_validator("received_at_utc")
    @classmethod
    def ensure_timezone_aware(cls, v: datetime) -> datetime:
        # Naive timestamps from ingestion are UTC by contract.
        if v.tzinfo is None:
            return v.replace(tzinfo=timezone.utc)
        return v.astimezone(timezone.utc)


class DecisionKind(str, Enum):
    NO_KNOWLEDGE_BASE = "no_knowledge_base"
    AUTO_REPLY_DISABLED = "auto_reply_disabled"
    AFTER_HOURS = "after_hours"
    RULE_MATCHED = "rule_matched"
    GENERATED = "generated"
    GENERATION_FAILED = "generation_failed"


class Decision(CamelModel):
    """Terminal output of one run of the auto-reply state machine."""
    kind: DecisionKind
    message: Optional[str] = None
    is_auto_reply: bool = False
    matched_rule_id: Optional[str] = None
    confidence: Optional[float] = None
    knowledge_base_id: Optional[str] = None
    inbound_message_id: Optional[str] = None
    tenant_id: Optional[str] = None
    response_delay: int = 0
    needs_human_followup: bool = False
    delivery_id: Optional[str] = None
    decided_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def has_reply(self) -> bool:
        return bool(self.message) and self.is_auto_reply


class GenerationOptions(CamelModel):
    temperature: float = 0.7
    max_tokens: int = 150
    stop_sequences: List[str] = Field(default_factory=list)


class GeneratedReply(CamelModel):
    text: str
    raw_text: str
    prompt: str
    confidence: float = 0.8
