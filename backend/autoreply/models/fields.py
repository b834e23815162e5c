# /autoreply/models/fields.py

import copy
from enum import Enum
from typing import Annotated, Any, Dict, List, Optional, Tuple

from pydantic import Field, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from autoreply.models.config import (
    ALLOWED_ROOT_SECTIONS,
    LOCAL_SECTIONS,
    AutoReplyRule,
    BusinessInfo,
    Holiday,
    ResponseSettingsOverride,
    ScheduleEntry,
    TimezoneName,
    Tone,
)
from autoreply.utils.errors import ValidationError

# Customizations address configuration fields by dotted path. Only the paths
# enumerated here can be customized; anything else is rejected when the
# FieldRef is constructed, before a record is loaded or written.


class FieldRef(str, Enum):
    AI_KNOWLEDGE_BASE_ID = "aiKnowledge.knowledgeBaseId"
    AI_SYSTEM_PROMPT = "aiKnowledge.systemPrompt"
    AI_BUSINESS_INFO = "aiKnowledge.businessInfo"
    AI_COMPANY_NAME = "aiKnowledge.businessInfo.companyName"
    AI_SERVICES = "aiKnowledge.businessInfo.services"
    AI_PRODUCTS = "aiKnowledge.businessInfo.products"
    AI_PRICING = "aiKnowledge.businessInfo.pricing"
    AI_CONTACT_INFO = "aiKnowledge.businessInfo.contactInfo"
    AI_WEBSITE = "aiKnowledge.businessInfo.website"
    AI_SOCIAL_MEDIA = "aiKnowledge.businessInfo.socialMedia"
    AI_RESPONSE_SETTINGS = "aiKnowledge.responseSettings"
    AI_MAX_LENGTH = "aiKnowledge.responseSettings.maxLength"
    AI_TONE = "aiKnowledge.responseSettings.tone"
    AI_INCLUDE_EMOJIS = "aiKnowledge.responseSettings.includeEmojis"
    AI_AUTO_REPLY_ENABLED = "aiKnowledge.responseSettings.autoReplyEnabled"
    AI_RESPONSE_DELAY = "aiKnowledge.responseSettings.responseDelay"
    HOURS_ENABLED = "businessHours.enabled"
    HOURS_TIMEZONE = "businessHours.timezone"
    HOURS_SCHEDULE = "businessHours.schedule"
    HOURS_AFTER_HOURS_MESSAGE = "businessHours.afterHoursMessage"
    HOURS_HOLIDAYS = "businessHours.holidays"
    HOURS_HOLIDAY_MESSAGE = "businessHours.holidayMessage"
    RULES_CUSTOM_RULES = "autoReplyRules.customRules"

    @classmethod
    def parse(cls, path: Any) -> "FieldRef":
        """Turn a dotted path into a FieldRef, raising ValidationError for anything unsupported."""
        if isinstance(path, cls):
            return path
        if not isinstance(path, str) or not path.strip():
            raise ValidationError("Field path must be a non-empty string")

        segments = path.split(".")
        if any(not segment for segment in segments):
            raise ValidationError(f"Malformed field path {path!r}: empty segment")

        root = segments[0]
        if root not in ALLOWED_ROOT_SECTIONS:
            raise ValidationError(
                f"Unknown section {root!r}; expected one of {', '.join(ALLOWED_ROOT_SECTIONS)}"
            )
        if root in LOCAL_SECTIONS:
            raise ValidationError(f"Section {root!r} is never inherited and cannot be customized")

        try:
            return cls(path)
        except ValueError:
            raise ValidationError(f"Unsupported field path {path!r}") from None

    @classmethod
    def supported_paths(cls) -> List[str]:
        return [ref.value for ref in cls]

    @property
    def segments(self) -> Tuple[str, ...]:
        return tuple(self.value.split("."))

    @property
    def section(self) -> str:
        return self.segments[0]

    def coerce(self, value: Any) -> Any:
        """Validate a customization value against this field's type and return its JSON form."""
        adapter = _ADAPTERS[self]
        try:
            validated = adapter.validate_python(value)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid value for {self.value}: {e.errors()[0]['msg']}") from e
        return adapter.dump_python(validated, mode="json", by_alias=True)

    def get(self, document: Dict[str, Any], default: Any = None) -> Any:
        current: Any = document
        for key in self.segments:
            if not isinstance(current, dict) or key not in current:
                return default
            current = current[key]
        return current

    def set(self, document: Dict[str, Any], value: Any) -> None:
        """Write value at this path, creating intermediate objects that are absent."""
        current = document
        for key in self.segments[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]
        current[self.segments[-1]] = copy.deepcopy(value)


_FIELD_TYPES: Dict[FieldRef, Any] = {
    FieldRef.AI_KNOWLEDGE_BASE_ID: Optional[str],
    FieldRef.AI_SYSTEM_PROMPT: Annotated[str, Field(max_length=2000)],
    FieldRef.AI_BUSINESS_INFO: BusinessInfo,
    FieldRef.AI_COMPANY_NAME: Optional[str],
    FieldRef.AI_SERVICES: List[str],
    FieldRef.AI_PRODUCTS: List[str],
    FieldRef.AI_PRICING: Optional[str],
    FieldRef.AI_CONTACT_INFO: Optional[str],
    FieldRef.AI_WEBSITE: Optional[str],
    FieldRef.AI_SOCIAL_MEDIA: List[str],
    FieldRef.AI_RESPONSE_SETTINGS: ResponseSettingsOverride,
    FieldRef.AI_MAX_LENGTH: Annotated[int, Field(ge=50, le=500)],
    FieldRef.AI_TONE: Tone,
    FieldRef.AI_INCLUDE_EMOJIS: bool,
    FieldRef.AI_AUTO_REPLY_ENABLED: bool,
    FieldRef.AI_RESPONSE_DELAY: Annotated[int, Field(ge=0, le=300)],
    FieldRef.HOURS_ENABLED: bool,
    FieldRef.HOURS_TIMEZONE: TimezoneName,
    FieldRef.HOURS_SCHEDULE: List[ScheduleEntry],
    FieldRef.HOURS_AFTER_HOURS_MESSAGE: str,
    FieldRef.HOURS_HOLIDAYS: List[Holiday],
    FieldRef.HOURS_HOLIDAY_MESSAGE: str,
    FieldRef.RULES_CUSTOM_RULES: List[AutoReplyRule],
}

_ADAPTERS: Dict[FieldRef, TypeAdapter] = {ref: TypeAdapter(tp) for ref, tp in _FIELD_TYPES.items()}

if set(_ADAPTERS) != set(FieldRef):
    raise RuntimeError("Every FieldRef needs a value type")
