# /autoreply/models/config.py

import re
import uuid
from datetime import date, datetime
from enum import Enum
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError
from typing import Annotated, Any, Dict, List, Optional

from pydantic import AfterValidator, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from autoreply.config import strings

# Persisted configuration models. Field names are snake_case in Python and
# camelCase on the wire / in MongoDB, so a stored document can be addressed
# with the same dotted paths used by customizations
# (e.g. "aiKnowledge.responseSettings.maxLength").

HHMM_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")

INHERITABLE_SECTIONS = ("aiKnowledge", "businessHours", "autoReplyRules")
LOCAL_SECTIONS = ("messageFiltering", "notifications", "analytics", "integrations", "advanced")
ALLOWED_ROOT_SECTIONS = INHERITABLE_SECTIONS + LOCAL_SECTIONS


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def merge_documents(base: Dict[str, Any], updates: Dict[str, Any]) -> Dict[str, Any]:
    """
    Copy of base with updates applied. Nested dicts are merged key by key;
    lists and scalars in updates replace the stored value.
    """
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = merge_documents(merged[key], value)
        else:
            merged[key] = value
    return merged


# ==================== Enums ====================

class OwnerType(str, Enum):
    ADMIN = "admin"
    COACH = "coach"


class InheritFrom(str, Enum):
    ADMIN = "admin"
    PARENT_COACH = "parent_coach"


class Tone(str, Enum):
    PROFESSIONAL = "professional"
    FRIENDLY = "friendly"
    CASUAL = "casual"
    FORMAL = "formal"
    ENTHUSIASTIC = "enthusiastic"


class RuleCondition(str, Enum):
    CONTAINS = "contains"
    EQUALS = "equals"
    STARTS_WITH = "starts_with"
    REGEX = "regex"


class ResetScope(str, Enum):
    ALL = "all"
    AI = "ai"
    BUSINESS_HOURS = "business_hours"
    RULES = "rules"


# Sections returned to their defaults by a reset, per scope.
RESET_SECTIONS = {
    ResetScope.ALL: INHERITABLE_SECTIONS,
    ResetScope.AI: ("aiKnowledge",),
    ResetScope.BUSINESS_HOURS: ("businessHours",),
    ResetScope.RULES: ("autoReplyRules",),
}


class Weekday(str, Enum):
    MONDAY = "monday"
    TUESDAY = "tuesday"
    WEDNESDAY = "wednesday"
    THURSDAY = "thursday"
    FRIDAY = "friday"
    SATURDAY = "saturday"
    SUNDAY = "sunday"


# ==================== Knowledge Base ====================

class BusinessInfo(CamelModel):
    """Business facts used only as prompt context. Every field is optional so the
    same model serves as a sparse override."""
    company_name: Optional[str] = None
    services: Optional[List[str]] = None
    products: Optional[List[str]] = None
    pricing: Optional[str] = None
    contact_info: Optional[str] = None
    website: Optional[str] = None
    social_media: Optional[List[str]] = None


class ResponseSettings(CamelModel):
    max_length: int = Field(default=150, ge=50, le=500)
    tone: Tone = Tone.FRIENDLY
    include_emojis: bool = True
    auto_reply_enabled: bool = True
    response_delay: int = Field(default=0, ge=0, le=300, description="Seconds to wait before sending")


class ResponseSettingsOverride(CamelModel):
    max_length: Optional[int] = Field(default=None, ge=50, le=500)
    tone: Optional[Tone] = None
    include_emojis: Optional[bool] = None
    auto_reply_enabled: Optional[bool] = None
    response_delay: Optional[int] = Field(default=None, ge=0, le=300)


def _validate_hhmm(v: str) -> str:
    if not HHMM_RE.match(v):
        raise ValueError(f"time must be HH:MM (24h), got {v!r}")
    return v


def _validate_timezone(v: str) -> str:
    try:
        ZoneInfo(v)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValueError(f"unknown timezone {v!r}") from None
    return v


ClockTime = Annotated[str, AfterValidator(_validate_hhmm)]
TimezoneName = Annotated[str, AfterValidator(_validate_timezone)]


class BreakTime(CamelModel):
    start_time: ClockTime
    end_time: ClockTime
    label: Optional[str] = None


class ScheduleEntry(CamelModel):
    day: Weekday
    start_time: ClockTime = "09:00"
    end_time: ClockTime = "18:00"
    is_active: bool = True
    break_times: List[BreakTime] = Field(default_factory=list)


class Holiday(CamelModel):
    holiday_date: date = Field(..., alias="date")
    name: Optional[str] = None
    is_active: bool = True


class BusinessHours(CamelModel):
    enabled: bool = True
    timezone: TimezoneName = "Asia/Kolkata"
    schedule: List[ScheduleEntry] = Field(default_factory=list)
    after_hours_message: str = strings.DEFAULT_AFTER_HOURS_MESSAGE
    holidays: List[Holiday] = Field(default_factory=list)
    holiday_message: str = strings.DEFAULT_HOLIDAY_MESSAGE


class AutoReplyRule(CamelModel):
    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    name: Optional[str] = None
    trigger: str = Field(..., min_length=1)
    condition: RuleCondition = RuleCondition.CONTAINS
    response: str = Field(..., min_length=1)
    priority: int = 1
    is_active: bool = True


class KnowledgeBaseStats(CamelModel):
    total_replies: int = 0
    successful_replies: int = 0
    failed_replies: int = 0
    last_used: Optional[datetime] = None
    success_rate: float = Field(default=0.0, ge=0, le=100)


class KnowledgeBase(CamelModel):
    """The content source (prompt, business facts, rules, hours) driving auto-replies."""
    id: Optional[str] = Field(default=None, alias="_id")
    title: str
    description: Optional[str] = None
    business_info: BusinessInfo = Field(default_factory=BusinessInfo)
    system_prompt: str = Field(..., max_length=2000)
    response_settings: ResponseSettings = Field(default_factory=ResponseSettings)
    business_hours: BusinessHours = Field(default_factory=BusinessHours)
    auto_reply_rules: List[AutoReplyRule] = Field(default_factory=list)
    is_active: bool = True
    is_default: bool = False
    created_by: Optional[str] = None
    stats: KnowledgeBaseStats = Field(default_factory=KnowledgeBaseStats)


# ==================== Settings sections ====================

class AIKnowledgeSection(CamelModel):
    use_default: bool = True
    knowledge_base_id: Optional[str] = None
    system_prompt: Optional[str] = Field(default=None, max_length=2000)
    business_info: Optional[BusinessInfo] = None
    response_settings: Optional[ResponseSettingsOverride] = None


class BusinessHoursSection(CamelModel):
    use_default: bool = True
    enabled: Optional[bool] = None
    timezone: Optional[TimezoneName] = None
    schedule: Optional[List[ScheduleEntry]] = None
    after_hours_message: Optional[str] = None
    holidays: Optional[List[Holiday]] = None
    holiday_message: Optional[str] = None


class AutoReplyRulesSection(CamelModel):
    use_default: bool = True
    custom_rules: Optional[List[AutoReplyRule]] = None


class FilterCondition(CamelModel):
    field: str
    operator: str
    value: Any = None


class MessageFilter(CamelModel):
    name: Optional[str] = None
    type: Optional[str] = Field(default=None, pattern="^(sender|content|time|frequency|message_type)$")
    conditions: List[FilterCondition] = Field(default_factory=list)
    action: str = Field(default="auto_reply", pattern="^(auto_reply|assign|escalate|ignore|archive)$")
    is_active: bool = True


class MessageFilteringSection(CamelModel):
    enabled: bool = False
    filters: List[MessageFilter] = Field(default_factory=list)


class NotificationTrigger(CamelModel):
    event: str = Field(..., pattern="^(new_message|urgent_message|ai_failed|after_hours|holiday)$")
    enabled: bool = True


class NotificationChannel(CamelModel):
    type: str = Field(..., pattern="^(email|sms|push|webhook)$")
    config: Dict[str, Any] = Field(default_factory=dict)
    triggers: List[NotificationTrigger] = Field(default_factory=list)


class EscalationRule(CamelModel):
    condition: str
    escalate_to: Optional[str] = None
    time_delay: Optional[int] = Field(default=None, description="Minutes")
    is_active: bool = True


class EscalationSettings(CamelModel):
    enabled: bool = False
    rules: List[EscalationRule] = Field(default_factory=list)


class NotificationsSection(CamelModel):
    enabled: bool = True
    channels: List[NotificationChannel] = Field(default_factory=list)
    escalation: EscalationSettings = Field(default_factory=EscalationSettings)


class AnalyticsTracking(CamelModel):
    response_time: bool = True
    ai_performance: bool = True
    user_satisfaction: bool = False
    conversion_tracking: bool = False


class AnalyticsReporting(CamelModel):
    frequency: str = Field(default="weekly", pattern="^(daily|weekly|monthly)$")
    recipients: List[str] = Field(default_factory=list)
    include_charts: bool = True


class AnalyticsSection(CamelModel):
    enabled: bool = True
    tracking: AnalyticsTracking = Field(default_factory=AnalyticsTracking)
    reporting: AnalyticsReporting = Field(default_factory=AnalyticsReporting)


class IntegrationConfig(CamelModel):
    enabled: bool = False
    provider: Optional[str] = None
    config: Dict[str, Any] = Field(default_factory=dict)


class IntegrationsSection(CamelModel):
    crm: IntegrationConfig = Field(default_factory=IntegrationConfig)
    calendar: IntegrationConfig = Field(default_factory=IntegrationConfig)
    payment: IntegrationConfig = Field(default_factory=IntegrationConfig)


class MessageRetention(CamelModel):
    days: int = Field(default=90, ge=1, le=365)
    auto_archive: bool = True


class SpamProtection(CamelModel):
    enabled: bool = True
    max_messages_per_hour: int = 10
    blacklisted_words: List[str] = Field(default_factory=list)
    whitelisted_contacts: List[str] = Field(default_factory=list)


class AIOptimization(CamelModel):
    enabled: bool = True
    learning_enabled: bool = False
    response_variation: int = Field(default=20, ge=0, le=100)


class AdvancedSection(CamelModel):
    message_retention: MessageRetention = Field(default_factory=MessageRetention)
    spam_protection: SpamProtection = Field(default_factory=SpamProtection)
    ai_optimization: AIOptimization = Field(default_factory=AIOptimization)


class SettingsSections(CamelModel):
    ai_knowledge: AIKnowledgeSection = Field(default_factory=AIKnowledgeSection)
    business_hours: BusinessHoursSection = Field(default_factory=BusinessHoursSection)
    auto_reply_rules: AutoReplyRulesSection = Field(default_factory=AutoReplyRulesSection)
    message_filtering: MessageFilteringSection = Field(default_factory=MessageFilteringSection)
    notifications: NotificationsSection = Field(default_factory=NotificationsSection)
    analytics: AnalyticsSection = Field(default_factory=AnalyticsSection)
    integrations: IntegrationsSection = Field(default_factory=IntegrationsSection)
    advanced: AdvancedSection = Field(default_factory=AdvancedSection)

    def sections_document(self) -> Dict[str, Any]:
        """JSON-compatible dict of the eight sections keyed by their camelCase names."""
        return self.model_dump(by_alias=True, mode="json", include=set(SettingsSections.model_fields))


# ==================== Configuration records ====================

class Customization(CamelModel):
    field_path: str
    value: Any = None
    overridden: bool = True


class InheritanceSettings(CamelModel):
    enabled: bool = False
    inherit_from: InheritFrom = InheritFrom.ADMIN
    customizations: List[Customization] = Field(default_factory=list)

    def find(self, field_path: str) -> Optional[Customization]:
        for customization in self.customizations:
            if customization.field_path == field_path:
                return customization
        return None


class ConfigurationRecord(SettingsSections):
    """Persisted, possibly partial configuration owned by an admin or a coach."""
    id: Optional[str] = Field(default=None, alias="_id")
    owner_id: str
    owner_type: OwnerType
    name: str = strings.DEFAULT_COACH_SETTINGS_NAME
    description: Optional[str] = None
    inheritance: InheritanceSettings = Field(default_factory=InheritanceSettings)
    is_active: bool = True
    is_default: bool = False
    version: int = 1
    created_by: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_document(self) -> Dict[str, Any]:
        """MongoDB document body. `_id` and timestamps are managed by the database layer."""
        return self.model_dump(
            by_alias=True,
            mode="json",
            exclude={"id", "created_at", "updated_at"},
        )


class EffectiveConfiguration(SettingsSections):
    """Fully resolved configuration. Never persisted, always recomputed."""
    owner_id: str
    owner_type: OwnerType
    version: int
    inherited_from: Optional[InheritFrom] = None
    parent_owner_id: Optional[str] = None
    warnings: List[str] = Field(default_factory=list)
