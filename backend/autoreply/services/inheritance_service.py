# /autoreply/services/inheritance_service.py

import copy
import logging
from typing import Any, Awaitable, Callable, Dict, FrozenSet, List, Optional

import tenacity
from pydantic import ValidationError as PydanticValidationError

from autoreply.config import strings
from autoreply.config.settings import settings
from autoreply.models.config import (
    ALLOWED_ROOT_SECTIONS,
    INHERITABLE_SECTIONS,
    LOCAL_SECTIONS,
    RESET_SECTIONS,
    AIKnowledgeSection,
    BusinessHours,
    ConfigurationRecord,
    Customization,
    EffectiveConfiguration,
    InheritFrom,
    KnowledgeBase,
    OwnerType,
    ResetScope,
    SettingsSections,
    merge_documents,
)
from autoreply.models.fields import FieldRef
from autoreply.services.cache_service import cache_service
from autoreply.services.db_service import db_service
from autoreply.utils.errors import AutoReplyError, NotFoundError, ValidationError, VersionConflictError

# Hierarchical configuration: a coach's effective configuration is its
# parent's configuration with the coach's customizations and non-default
# sections layered on top. The customizations list is the only stored copy
# of an override; the live view is always computed by resolve().

logger = logging.getLogger(__name__)

ParentLookup = Callable[[InheritFrom], Optional[SettingsSections]]
CoachHierarchy = Callable[[str], Awaitable[Optional[str]]]

CACHE_KEY_PREFIX = "effective_settings:"


# ==================== Pure resolution ====================

def _effective(sections: Dict[str, Any], record: ConfigurationRecord, **extra: Any) -> EffectiveConfiguration:
    return EffectiveConfiguration.model_validate({
        **sections,
        "ownerId": record.owner_id,
        "ownerType": record.owner_type,
        "version": record.version,
        **extra,
    })


def resolve(record: ConfigurationRecord, parent_lookup: ParentLookup) -> EffectiveConfiguration:
    """
    Compute the effective configuration for record.

    With inheritance disabled the record's own sections are returned and
    customizations are not consulted. Otherwise the parent's sections are
    copied, overridden customizations are applied in list order, inheritable
    sections with useDefault=false replace the inherited section wholesale,
    and the local sections always come from the record. Neither input is
    mutated.
    """
    own = record.sections_document()
    if not record.inheritance.enabled:
        return _effective(own, record)

    inherit_from = record.inheritance.inherit_from
    parent = parent_lookup(inherit_from)
    if parent is None:
        warning = f"No {inherit_from.value} configuration found for {record.owner_id}; using its own settings"
        logger.warning(warning)
        return _effective(own, record, inheritedFrom=inherit_from, warnings=[warning])

    effective = copy.deepcopy(parent.sections_document())

    for customization in record.inheritance.customizations:
        if not customization.overridden:
            continue
        try:
            ref = FieldRef.parse(customization.field_path)
        except ValidationError as e:
            logger.warning(f"Ignoring stored customization on {record.owner_id}: {e}")
            continue
        ref.set(effective, customization.value)

    # Wholesale section overrides are applied after customizations so they win.
    for section in INHERITABLE_SECTIONS:
        if not own[section]["useDefault"]:
            effective[section] = own[section]

    for section in LOCAL_SECTIONS:
        effective[section] = own[section]

    return _effective(
        effective,
        record,
        inheritedFrom=inherit_from,
        parentOwnerId=getattr(parent, "owner_id", None),
    )


def with_customization(record: ConfigurationRecord, ref: FieldRef, value: Any) -> ConfigurationRecord:
    """Copy of record with ref customized to value, replacing any earlier entry for the same path."""
    customizations = [c for c in record.inheritance.customizations if c.field_path != ref.value]
    entry = Customization(field_path=ref.value, value=copy.deepcopy(value), overridden=True)

    # Keep the original position of a replaced entry so application order is stable.
    for index, existing in enumerate(record.inheritance.customizations):
        if existing.field_path == ref.value:
            customizations.insert(index, entry)
            break
    else:
        customizations.append(entry)

    inheritance = record.inheritance.model_copy(update={"customizations": customizations})
    return record.model_copy(update={"inheritance": inheritance})


def without_customization(record: ConfigurationRecord, ref: FieldRef) -> Optional[ConfigurationRecord]:
    """Copy of record without the customization for ref, or None when there is none to remove."""
    if record.inheritance.find(ref.value) is None:
        return None
    customizations = [c for c in record.inheritance.customizations if c.field_path != ref.value]
    inheritance = record.inheritance.model_copy(update={"customizations": customizations})
    return record.model_copy(update={"inheritance": inheritance})


def _with_sections(record: ConfigurationRecord, document: Dict[str, Any], **changes: Any) -> ConfigurationRecord:
    try:
        sections = SettingsSections.model_validate(document)
    except PydanticValidationError as e:
        raise ValidationError(f"Invalid settings: {e}") from e
    for field in SettingsSections.model_fields:
        changes[field] = getattr(sections, field)
    return record.model_copy(update=changes)


def with_section_updates(record: ConfigurationRecord, updates: Dict[str, Any],
                         name: Optional[str] = None, description: Optional[str] = None) -> ConfigurationRecord:
    """
    Copy of record with sparse camelCase section updates merged into its own
    sections. The merged sections are validated as a whole, so a bad value
    anywhere rejects the update. Customizations are left untouched.
    """
    unknown = sorted(set(updates) - set(ALLOWED_ROOT_SECTIONS))
    if unknown:
        raise ValidationError(f"Unknown settings sections: {', '.join(unknown)}")

    changes: Dict[str, Any] = {}
    if name is not None:
        changes["name"] = name
    if description is not None:
        changes["description"] = description
    return _with_sections(record, merge_documents(record.sections_document(), updates), **changes)


def reset_sections(record: ConfigurationRecord, scope: ResetScope) -> ConfigurationRecord:
    """Copy of record with the scoped sections back at their defaults and their customizations dropped."""
    sections = RESET_SECTIONS[scope]
    defaults = SettingsSections().sections_document()
    document = record.sections_document()
    for section in sections:
        document[section] = defaults[section]

    customizations = [
        c for c in record.inheritance.customizations if c.field_path.split(".", 1)[0] not in sections
    ]
    inheritance = record.inheritance.model_copy(update={"customizations": customizations})
    return _with_sections(record, document, inheritance=inheritance)


def apply_knowledge_overrides(effective: EffectiveConfiguration, kb: KnowledgeBase) -> KnowledgeBase:
    """
    Overlay the effective aiKnowledge, businessHours and autoReplyRules
    sections onto the selected knowledge base. Only fields that are set in a
    section override the knowledge base.
    """
    document = kb.model_dump(by_alias=True, mode="json")
    ai = effective.ai_knowledge

    if ai.system_prompt:
        document["systemPrompt"] = ai.system_prompt
    if ai.business_info is not None:
        document["businessInfo"].update(ai.business_info.model_dump(by_alias=True, mode="json", exclude_none=True))
    if ai.response_settings is not None:
        document["responseSettings"].update(
            ai.response_settings.model_dump(by_alias=True, mode="json", exclude_none=True)
        )

    hours_section = effective.business_hours
    if hours_section.use_default:
        hours = document["businessHours"]
    else:
        hours = BusinessHours().model_dump(by_alias=True, mode="json")
    hours.update(hours_section.model_dump(by_alias=True, mode="json", exclude_none=True, exclude={"use_default"}))
    document["businessHours"] = hours

    rules_section = effective.auto_reply_rules
    if rules_section.custom_rules is not None:
        document["autoReplyRules"] = [rule.model_dump(by_alias=True, mode="json") for rule in rules_section.custom_rules]
    elif not rules_section.use_default:
        document["autoReplyRules"] = []

    return KnowledgeBase.model_validate(document)


def default_coach_record(coach_id: str) -> ConfigurationRecord:
    return ConfigurationRecord(
        owner_id=coach_id,
        owner_type=OwnerType.COACH,
        name=strings.DEFAULT_COACH_SETTINGS_NAME,
        description=strings.DEFAULT_COACH_SETTINGS_DESCRIPTION,
        created_by=coach_id,
        inheritance={"enabled": True, "inherit_from": InheritFrom.ADMIN, "customizations": []},
    )


# ==================== Service ====================

class InheritanceService:
    """
    Loads, resolves, caches and mutates configuration records.

    `coach_hierarchy` is an async callable returning a coach's parent coach id;
    without one, parent_coach inheritance falls back to the admin default.
    """

    def __init__(self, db, cache=None, coach_hierarchy: Optional[CoachHierarchy] = None):
        self.db = db
        self.cache = cache
        self.coach_hierarchy = coach_hierarchy

    # ---------- Loading ----------

    async def get_or_create_coach_settings(self, coach_id: str) -> ConfigurationRecord:
        record = await self.db.get_settings_by_owner(coach_id)
        if record:
            return record
        logger.info(f"Creating default settings record for coach {coach_id}")
        return await self.db.create_settings_if_absent(default_coach_record(coach_id))

    async def _load_record(self, owner_id: str, owner_type: OwnerType) -> ConfigurationRecord:
        if owner_type == OwnerType.COACH:
            return await self.get_or_create_coach_settings(owner_id)
        record = await self.db.get_settings_by_owner(owner_id)
        if not record:
            raise NotFoundError(f"No configuration found for {owner_type.value} {owner_id}")
        return record

    async def _fetch_parent(self, record: ConfigurationRecord,
                            seen: FrozenSet[str]) -> Optional[SettingsSections]:
        if record.inheritance.inherit_from == InheritFrom.PARENT_COACH:
            parent = await self._fetch_parent_coach(record, seen)
            if parent is not None:
                return parent
            logger.info(f"No parent coach configuration for {record.owner_id}; inheriting from admin")
        return await self.db.get_default_settings(OwnerType.ADMIN)

    async def _fetch_parent_coach(self, record: ConfigurationRecord,
                                  seen: FrozenSet[str]) -> Optional[EffectiveConfiguration]:
        if not self.coach_hierarchy:
            return None
        parent_id = await self.coach_hierarchy(record.owner_id)
        if not parent_id:
            return None
        if parent_id in seen:
            logger.warning(f"Coach hierarchy cycle at {record.owner_id} -> {parent_id}")
            return None
        parent_record = await self.db.get_settings_by_owner(parent_id)
        if not parent_record:
            return None
        return await self._resolve_record(parent_record, seen | {record.owner_id})

    async def _resolve_record(self, record: ConfigurationRecord,
                              seen: FrozenSet[str] = frozenset()) -> EffectiveConfiguration:
        if not record.inheritance.enabled:
            return resolve(record, lambda _: None)
        parent = await self._fetch_parent(record, seen | {record.owner_id})
        return resolve(record, {record.inheritance.inherit_from: parent}.get)

    async def get_effective_settings(self, owner_id: str, owner_type: OwnerType = OwnerType.COACH,
                                     use_cache: bool = True) -> EffectiveConfiguration:
        cache_key = f"{CACHE_KEY_PREFIX}{owner_id}"
        if self.cache and use_cache:
            cached = await self.cache.get_json(cache_key)
            if cached:
                try:
                    return EffectiveConfiguration.model_validate(cached)
                except PydanticValidationError:
                    logger.warning(f"Discarding stale cached settings for {owner_id}")

        record = await self._load_record(owner_id, owner_type)
        effective = await self._resolve_record(record)

        if self.cache:
            await self.cache.set_json(
                cache_key,
                effective.model_dump(by_alias=True, mode="json"),
                ttl=settings.settings_cache_ttl_seconds,
            )
        return effective

    async def _invalidate(self, owner_id: str):
        if self.cache:
            await self.cache.delete(f"{CACHE_KEY_PREFIX}{owner_id}")

    # ---------- Mutations ----------

    @tenacity.retry(
        retry=tenacity.retry_if_exception_type(VersionConflictError),
        stop=tenacity.stop_after_attempt(3),
        wait=tenacity.wait_random(min=0, max=0.1),
        before_sleep=tenacity.before_sleep_log(logger, logging.INFO),
        reraise=True,
    )
    async def _mutate(self, owner_id: str,
                      change: Callable[[ConfigurationRecord], Optional[ConfigurationRecord]],
                      load: Optional[Callable[[], Awaitable[ConfigurationRecord]]] = None) -> ConfigurationRecord:
        """
        Load, change and compare-and-swap save; the whole cycle is retried on a
        version conflict. Records are loaded as coach records unless `load` is given.
        """
        record = await (load() if load else self.get_or_create_coach_settings(owner_id))
        updated = change(record)
        if updated is None:
            return record
        saved = await self.db.save_settings(updated)
        await self._invalidate(saved.owner_id)
        return saved

    async def add_customization(self, coach_id: str, field_path: str, value: Any) -> ConfigurationRecord:
        ref = FieldRef.parse(field_path)
        coerced = ref.coerce(value)
        saved = await self._mutate(coach_id, lambda record: with_customization(record, ref, coerced))
        logger.info(f"Customized {ref.value} for coach {coach_id} (version {saved.version})")
        return saved

    async def remove_customization(self, coach_id: str, field_path: str) -> ConfigurationRecord:
        ref = FieldRef.parse(field_path)
        saved = await self._mutate(coach_id, lambda record: without_customization(record, ref))
        logger.info(f"Removed customization {ref.value} for coach {coach_id}")
        return saved

    async def update_coach_sections(self, coach_id: str, updates: Dict[str, Any], name: Optional[str] = None,
                                    description: Optional[str] = None) -> ConfigurationRecord:
        saved = await self._mutate(
            coach_id, lambda record: with_section_updates(record, updates, name=name, description=description)
        )
        logger.info(f"Updated sections {sorted(updates)} for coach {coach_id} (version {saved.version})")
        return saved

    async def reset_coach_settings(self, coach_id: str, scope: ResetScope = ResetScope.ALL) -> ConfigurationRecord:
        saved = await self._mutate(coach_id, lambda record: reset_sections(record, ResetScope(scope)))
        logger.info(f"Reset {ResetScope(scope).value} settings for coach {coach_id}")
        return saved

    # ---------- Admin records ----------

    async def _load_admin_record(self, settings_id: str) -> ConfigurationRecord:
        record = await self.db.get_settings_by_id(settings_id)
        if not record or record.owner_type != OwnerType.ADMIN or not record.is_active:
            raise NotFoundError(f"Admin configuration {settings_id} not found")
        return record

    async def create_admin_settings(self, admin_id: str, name: str, description: Optional[str] = None,
                                    sections: Optional[Dict[str, Any]] = None,
                                    is_default: bool = False) -> ConfigurationRecord:
        """Create an admin record. Admin records never inherit; with is_default it becomes the coaches' parent."""
        record = with_section_updates(
            ConfigurationRecord(
                owner_id=admin_id,
                owner_type=OwnerType.ADMIN,
                name=name,
                description=description,
                created_by=admin_id,
            ),
            sections or {},
        )
        created = await self.db.create_settings(record)
        if is_default:
            created = await self.set_default_settings(created.id)
        return created

    async def update_admin_settings(self, settings_id: str, updates: Dict[str, Any], name: Optional[str] = None,
                                    description: Optional[str] = None) -> ConfigurationRecord:
        saved = await self._mutate(
            settings_id,
            lambda record: with_section_updates(record, updates, name=name, description=description),
            load=lambda: self._load_admin_record(settings_id),
        )
        logger.info(f"Updated admin configuration {settings_id} (version {saved.version})")
        return saved

    async def delete_admin_settings(self, settings_id: str) -> None:
        record = await self._load_admin_record(settings_id)
        await self.db.deactivate_settings(record)
        await self._invalidate(record.owner_id)

    async def is_field_customized(self, owner_id: str, field_path: str) -> bool:
        ref = FieldRef.parse(field_path)
        record = await self.db.get_settings_by_owner(owner_id)
        if not record:
            return False
        customization = record.inheritance.find(ref.value)
        return bool(customization and customization.overridden)

    async def bulk_update_inheritance(self, coach_ids: List[str], enabled: Optional[bool] = None,
                                      inherit_from: Optional[InheritFrom] = None) -> List[Dict[str, Any]]:
        if enabled is None and inherit_from is None:
            raise ValidationError("Nothing to update: provide enabled and/or inheritFrom")

        changes: Dict[str, Any] = {}
        if enabled is not None:
            changes["enabled"] = enabled
        if inherit_from is not None:
            changes["inherit_from"] = InheritFrom(inherit_from)

        def change(record: ConfigurationRecord) -> ConfigurationRecord:
            return record.model_copy(update={"inheritance": record.inheritance.model_copy(update=changes)})

        results = []
        for coach_id in coach_ids:
            try:
                await self._mutate(coach_id, change)
                results.append({"coachId": coach_id, "status": "success", "message": "Inheritance updated"})
            except AutoReplyError as e:
                logger.error(f"Bulk inheritance update failed for coach {coach_id}: {e}")
                results.append({"coachId": coach_id, "status": "error", "message": str(e)})
        return results

    async def set_default_settings(self, settings_id: str) -> ConfigurationRecord:
        record = await self.db.set_default_settings(settings_id)
        await self._invalidate(record.owner_id)
        return record

    # ---------- Views ----------

    async def get_inheritance_tree(self, coach_id: str) -> Dict[str, Any]:
        record = await self.get_or_create_coach_settings(coach_id)
        parent = None
        if record.inheritance.enabled:
            parent = await self._fetch_parent(record, frozenset({record.owner_id}))
        effective = await self._resolve_record(record)

        return {
            "owner": {
                "ownerId": record.owner_id,
                "ownerType": record.owner_type.value,
                "version": record.version,
                "inheritanceEnabled": record.inheritance.enabled,
                "inheritFrom": record.inheritance.inherit_from.value,
            },
            "customizations": [c.model_dump(by_alias=True, mode="json") for c in record.inheritance.customizations],
            "parent": {
                "type": record.inheritance.inherit_from.value,
                "ownerId": parent.owner_id,
                "settings": parent.sections_document(),
            } if parent is not None else None,
            "effective": effective.model_dump(by_alias=True, mode="json"),
        }

    async def _select_knowledge_base(self, section: AIKnowledgeSection) -> Optional[KnowledgeBase]:
        """A chosen knowledgeBaseId wins whether it was customized or set on the section itself."""
        if section.knowledge_base_id:
            kb = await self.db.get_knowledge_base(section.knowledge_base_id)
            if kb and kb.is_active:
                return kb
            logger.warning(f"Knowledge base {section.knowledge_base_id} is missing or inactive; using the default")
        return await self.db.get_default_knowledge_base()

    async def resolve_knowledge_base(self, owner_id: str,
                                     owner_type: OwnerType = OwnerType.COACH) -> Optional[KnowledgeBase]:
        """The knowledge base driving auto-replies for owner_id with its customizations applied, or None."""
        effective = await self.get_effective_settings(owner_id, owner_type)
        kb = await self._select_knowledge_base(effective.ai_knowledge)
        if kb is None:
            return None
        return apply_knowledge_overrides(effective, kb)


inheritance_service = InheritanceService(db_service, cache_service)
