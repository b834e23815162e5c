# /autoreply/models/api.py

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from autoreply.models.config import (
    ALLOWED_ROOT_SECTIONS,
    AutoReplyRule,
    BusinessHours,
    BusinessInfo,
    CamelModel,
    InheritFrom,
    ResetScope,
    ResponseSettings,
)

# Request and response bodies for the HTTP API.


class APIResponse(BaseModel):
    success: bool
    message: str
    data: Optional[Dict[str, Any]] = None
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    version: str


class CustomizationRequest(CamelModel):
    field_path: str = Field(..., min_length=1)
    value: Any = None


class BulkInheritanceRequest(CamelModel):
    coach_ids: List[str] = Field(..., min_length=1, max_length=500)
    enabled: Optional[bool] = None
    inherit_from: Optional[InheritFrom] = None


class SettingsUpdate(CamelModel):
    """
    Partial settings update. Each section is a sparse camelCase dict merged
    into the stored section; lists are replaced whole.
    """
    name: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    ai_knowledge: Optional[Dict[str, Any]] = None
    business_hours: Optional[Dict[str, Any]] = None
    auto_reply_rules: Optional[Dict[str, Any]] = None
    message_filtering: Optional[Dict[str, Any]] = None
    notifications: Optional[Dict[str, Any]] = None
    analytics: Optional[Dict[str, Any]] = None
    integrations: Optional[Dict[str, Any]] = None
    advanced: Optional[Dict[str, Any]] = None

    def section_updates(self) -> Dict[str, Any]:
        dumped = self.model_dump(by_alias=True, exclude_unset=True)
        return {key: value for key, value in dumped.items() if key in ALLOWED_ROOT_SECTIONS and value is not None}


class AdminSettingsCreate(SettingsUpdate):
    name: str = Field(..., min_length=1)
    is_default: bool = False


class ResetRequest(CamelModel):
    reset_type: ResetScope = ResetScope.ALL


class KnowledgeBaseUpdate(CamelModel):
    """Partial knowledge base update; only fields that are sent are changed."""
    title: Optional[str] = None
    description: Optional[str] = None
    business_info: Optional[BusinessInfo] = None
    system_prompt: Optional[str] = Field(default=None, max_length=2000)
    response_settings: Optional[ResponseSettings] = None
    business_hours: Optional[BusinessHours] = None
    auto_reply_rules: Optional[List[AutoReplyRule]] = None
    is_active: Optional[bool] = None

    def to_updates(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_unset=True)


class InboundAccepted(CamelModel):
    """Acknowledgement for /messages/inbound: duplicate, queued or processing."""
    status: str
    message_id: str
