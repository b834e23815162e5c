# backend/tests/unit/test_inheritance.py
import pytest
from unittest.mock import AsyncMock

from autoreply.models.config import (
    AutoReplyRule,
    ConfigurationRecord,
    EffectiveConfiguration,
    InheritFrom,
    OwnerType,
    ResetScope,
)
from autoreply.models.fields import FieldRef
from autoreply.services.inheritance_service import (
    InheritanceService,
    apply_knowledge_overrides,
    reset_sections,
    resolve,
    with_customization,
    with_section_updates,
    without_customization,
)
from autoreply.utils.errors import NotFoundError, PersistenceError, ValidationError, VersionConflictError


def lookup(parent):
    return {InheritFrom.ADMIN: parent}.get


# --- resolve ---

def test_resolve_is_identity_when_inheritance_disabled(admin_record, coach_record):
    record = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 300)
    record = record.model_copy(update={"inheritance": record.inheritance.model_copy(update={"enabled": False})})

    effective = resolve(record, lookup(admin_record))

    assert effective.sections_document() == record.sections_document()
    assert effective.ai_knowledge.response_settings is None
    assert effective.inherited_from is None


def test_resolve_is_idempotent(admin_record, coach_record):
    record = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 200)
    first = resolve(record, lookup(admin_record))
    second = resolve(record, lookup(admin_record))
    assert first.model_dump_json() == second.model_dump_json()


def test_customization_round_trip(admin_record, coach_record):
    customized = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 200)
    effective = resolve(customized, lookup(admin_record))
    assert effective.ai_knowledge.response_settings.max_length == 200
    # Sibling fields still come from the parent.
    assert effective.ai_knowledge.response_settings.tone.value == "professional"

    removed = without_customization(customized, FieldRef.AI_MAX_LENGTH)
    effective = resolve(removed, lookup(admin_record))
    assert effective.ai_knowledge.response_settings.max_length == 150


def test_removed_customization_without_parent_value_is_unset(admin_record, coach_record):
    customized = with_customization(coach_record, FieldRef.AI_WEBSITE, "https://fit.example")
    assert resolve(customized, lookup(admin_record)).ai_knowledge.business_info.website == "https://fit.example"

    removed = without_customization(customized, FieldRef.AI_WEBSITE)
    assert resolve(removed, lookup(admin_record)).ai_knowledge.business_info is None


def test_wholesale_section_override_beats_customization(admin_record, coach_record):
    record = with_customization(coach_record, FieldRef.HOURS_AFTER_HOURS_MESSAGE, "Customized message")
    record = record.model_copy(update={
        "business_hours": record.business_hours.model_copy(
            update={"use_default": False, "after_hours_message": "Own section message"}
        )
    })

    effective = resolve(record, lookup(admin_record))

    assert effective.business_hours.after_hours_message == "Own section message"
    assert effective.business_hours.use_default is False


def test_customizations_apply_in_list_order(admin_record, coach_record):
    record = with_customization(coach_record, FieldRef.AI_RESPONSE_SETTINGS, {"maxLength": 100, "tone": "casual"})
    record = with_customization(record, FieldRef.AI_MAX_LENGTH, 250)

    effective = resolve(record, lookup(admin_record))

    assert effective.ai_knowledge.response_settings.max_length == 250
    assert effective.ai_knowledge.response_settings.tone.value == "casual"


def test_local_sections_are_never_inherited(admin_record, coach_record):
    assert admin_record.analytics.enabled is False
    effective = resolve(coach_record, lookup(admin_record))
    assert effective.analytics.enabled is True


def test_inheritable_sections_come_from_parent(admin_record, coach_record):
    effective = resolve(coach_record, lookup(admin_record))
    assert effective.business_hours.after_hours_message == "Admin: we are closed."
    assert effective.parent_owner_id == "admin-1"
    assert effective.inherited_from == InheritFrom.ADMIN
    assert effective.version == coach_record.version


def test_missing_parent_falls_back_to_record_with_warning(coach_record):
    effective = resolve(coach_record, lookup(None))
    assert effective.sections_document() == coach_record.sections_document()
    assert len(effective.warnings) == 1
    assert "admin" in effective.warnings[0]


def test_resolve_does_not_mutate_inputs(admin_record, coach_record):
    record = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 200)
    parent_before = admin_record.model_dump_json()
    record_before = record.model_dump_json()

    resolve(record, lookup(admin_record))

    assert admin_record.model_dump_json() == parent_before
    assert record.model_dump_json() == record_before


def test_overridden_false_entries_are_skipped(admin_record, coach_record):
    record = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 200)
    record.inheritance.customizations[0].overridden = False
    assert resolve(record, lookup(admin_record)).ai_knowledge.response_settings.max_length == 150


# --- customization list ---

def test_readding_a_path_replaces_the_entry_in_place(coach_record):
    record = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 200)
    record = with_customization(record, FieldRef.AI_TONE, "casual")
    record = with_customization(record, FieldRef.AI_MAX_LENGTH, 300)

    paths = [c.field_path for c in record.inheritance.customizations]
    assert paths == ["aiKnowledge.responseSettings.maxLength", "aiKnowledge.responseSettings.tone"]
    assert record.inheritance.customizations[0].value == 300


def test_without_customization_returns_none_when_absent(coach_record):
    assert without_customization(coach_record, FieldRef.AI_TONE) is None


# --- knowledge overlay ---

def test_apply_knowledge_overrides_overlays_set_fields(make_kb, make_rule):
    kb = make_kb(auto_reply_rules=[make_rule("price")])
    effective = EffectiveConfiguration(
        owner_id="coach-1",
        owner_type=OwnerType.COACH,
        version=1,
        ai_knowledge={
            "system_prompt": "Coach-specific prompt",
            "business_info": {"company_name": "Coach Dana"},
            "response_settings": {"max_length": 80},
        },
        business_hours={"after_hours_message": "Dana is offline"},
    )

    resolved = apply_knowledge_overrides(effective, kb)

    assert resolved.system_prompt == "Coach-specific prompt"
    assert resolved.business_info.company_name == "Coach Dana"
    assert resolved.business_info.pricing == "From $50"
    assert resolved.response_settings.max_length == 80
    assert resolved.response_settings.tone == kb.response_settings.tone
    assert resolved.business_hours.after_hours_message == "Dana is offline"
    assert resolved.business_hours.enabled is False
    assert [rule.trigger for rule in resolved.auto_reply_rules] == ["price"]


def test_apply_knowledge_overrides_rules(make_kb, make_rule):
    kb = make_kb(auto_reply_rules=[make_rule("price")])
    base = {"owner_id": "coach-1", "owner_type": OwnerType.COACH, "version": 1}

    own_rules = EffectiveConfiguration(**base, auto_reply_rules={
        "use_default": False, "custom_rules": [AutoReplyRule(trigger="hours", response="9 to 6")],
    })
    assert [r.trigger for r in apply_knowledge_overrides(own_rules, kb).auto_reply_rules] == ["hours"]

    no_rules = EffectiveConfiguration(**base, auto_reply_rules={"use_default": False})
    assert apply_knowledge_overrides(no_rules, kb).auto_reply_rules == []


def test_apply_knowledge_overrides_own_hours_start_from_defaults(make_kb):
    kb = make_kb(business_hours={"enabled": False, "timezone": "Europe/London"})
    effective = EffectiveConfiguration(
        owner_id="coach-1", owner_type=OwnerType.COACH, version=1,
        business_hours={"use_default": False, "schedule": [{"day": "monday"}]},
    )
    hours = apply_knowledge_overrides(effective, kb).business_hours
    assert hours.enabled is True
    assert hours.timezone == "Asia/Kolkata"
    assert [entry.day.value for entry in hours.schedule] == ["monday"]


# --- service ---

@pytest.fixture
def db(admin_record, coach_record):
    db = AsyncMock()
    db.get_settings_by_owner.return_value = coach_record
    db.get_default_settings.return_value = admin_record
    db.save_settings.side_effect = lambda record: record.model_copy(update={"version": record.version + 1})
    return db


@pytest.fixture
def cache():
    cache = AsyncMock()
    cache.get_json.return_value = None
    return cache


@pytest.mark.asyncio
async def test_coach_record_is_created_lazily(db, coach_record):
    db.get_settings_by_owner.return_value = None
    db.create_settings_if_absent.side_effect = lambda record: record
    service = InheritanceService(db)

    record = await service.get_or_create_coach_settings("coach-9")

    db.create_settings_if_absent.assert_awaited_once()
    assert record.owner_id == "coach-9"
    assert record.owner_type == OwnerType.COACH
    assert record.inheritance.enabled is True
    assert record.inheritance.inherit_from == InheritFrom.ADMIN
    assert record.inheritance.customizations == []


@pytest.mark.asyncio
async def test_add_customization_persists_and_invalidates_cache(db, cache):
    service = InheritanceService(db, cache)

    saved = await service.add_customization("coach-1", "aiKnowledge.responseSettings.maxLength", 200)

    assert saved.version == 4
    assert saved.inheritance.find("aiKnowledge.responseSettings.maxLength").value == 200
    cache.delete.assert_awaited_once_with("effective_settings:coach-1")


@pytest.mark.asyncio
async def test_add_customization_validates_before_loading(db):
    service = InheritanceService(db)

    with pytest.raises(ValidationError):
        await service.add_customization("coach-1", "aiKnowledge..maxLength", 200)
    with pytest.raises(ValidationError):
        await service.add_customization("coach-1", "aiKnowledge.responseSettings.maxLength", 5000)

    db.get_settings_by_owner.assert_not_awaited()
    db.save_settings.assert_not_awaited()


@pytest.mark.asyncio
async def test_add_customization_retries_on_version_conflict(db, coach_record):
    saved = coach_record.model_copy(update={"version": 5})
    db.save_settings.side_effect = [VersionConflictError("stale"), saved]
    service = InheritanceService(db)

    result = await service.add_customization("coach-1", "aiKnowledge.responseSettings.tone", "casual")

    assert result is saved
    assert db.get_settings_by_owner.await_count == 2
    assert db.save_settings.await_count == 2


@pytest.mark.asyncio
async def test_add_customization_gives_up_after_repeated_conflicts(db):
    db.save_settings.side_effect = VersionConflictError("stale")
    service = InheritanceService(db)

    with pytest.raises(VersionConflictError):
        await service.add_customization("coach-1", "aiKnowledge.responseSettings.tone", "casual")
    assert db.save_settings.await_count == 3


@pytest.mark.asyncio
async def test_remove_missing_customization_writes_nothing(db, coach_record):
    service = InheritanceService(db)
    result = await service.remove_customization("coach-1", "aiKnowledge.responseSettings.tone")
    assert result is coach_record
    db.save_settings.assert_not_awaited()


@pytest.mark.asyncio
async def test_is_field_customized(db, coach_record):
    db.get_settings_by_owner.return_value = with_customization(coach_record, FieldRef.AI_TONE, "casual")
    service = InheritanceService(db)

    assert await service.is_field_customized("coach-1", "aiKnowledge.responseSettings.tone") is True
    assert await service.is_field_customized("coach-1", "aiKnowledge.responseSettings.maxLength") is False


@pytest.mark.asyncio
async def test_effective_settings_are_cached(db, cache):
    service = InheritanceService(db, cache)

    effective = await service.get_effective_settings("coach-1")

    assert effective.business_hours.after_hours_message == "Admin: we are closed."
    cache.set_json.assert_awaited_once()
    key, payload = cache.set_json.await_args.args
    assert key == "effective_settings:coach-1"

    cache.get_json.return_value = payload
    db.get_settings_by_owner.reset_mock()
    cached = await service.get_effective_settings("coach-1")

    assert cached == effective
    db.get_settings_by_owner.assert_not_awaited()


@pytest.mark.asyncio
async def test_parent_coach_inherits_parent_effective_settings(db, admin_record, coach_record):
    child = coach_record.model_copy(update={
        "owner_id": "coach-2",
        "inheritance": coach_record.inheritance.model_copy(update={"inherit_from": InheritFrom.PARENT_COACH}),
    })
    parent = with_customization(coach_record, FieldRef.AI_MAX_LENGTH, 90)
    db.get_settings_by_owner.side_effect = lambda owner_id: {"coach-2": child, "coach-1": parent}.get(owner_id)
    hierarchy = AsyncMock(side_effect=lambda coach_id: {"coach-2": "coach-1"}.get(coach_id))
    service = InheritanceService(db, coach_hierarchy=hierarchy)

    effective = await service.get_effective_settings("coach-2")

    assert effective.ai_knowledge.response_settings.max_length == 90
    assert effective.parent_owner_id == "coach-1"


@pytest.mark.asyncio
async def test_parent_coach_cycle_falls_back_to_admin(db, coach_record):
    parent_coach = InheritFrom.PARENT_COACH
    a = coach_record.model_copy(update={
        "owner_id": "coach-a",
        "inheritance": coach_record.inheritance.model_copy(update={"inherit_from": parent_coach}),
    })
    b = a.model_copy(update={"owner_id": "coach-b"})
    db.get_settings_by_owner.side_effect = lambda owner_id: {"coach-a": a, "coach-b": b}.get(owner_id)
    hierarchy = AsyncMock(side_effect=lambda coach_id: {"coach-a": "coach-b", "coach-b": "coach-a"}[coach_id])
    service = InheritanceService(db, coach_hierarchy=hierarchy)

    effective = await service.get_effective_settings("coach-a")

    assert effective.business_hours.after_hours_message == "Admin: we are closed."


@pytest.mark.asyncio
async def test_parent_coach_without_hierarchy_uses_admin(db, coach_record):
    record = coach_record.model_copy(update={
        "inheritance": coach_record.inheritance.model_copy(update={"inherit_from": InheritFrom.PARENT_COACH}),
    })
    db.get_settings_by_owner.return_value = record
    service = InheritanceService(db)

    effective = await service.get_effective_settings("coach-1")

    assert effective.parent_owner_id == "admin-1"


@pytest.mark.asyncio
async def test_bulk_update_reports_per_coach_results(db, coach_record):
    saved = []

    async def save(record):
        if record.owner_id == "coach-bad":
            raise PersistenceError("write failed")
        saved.append(record)
        return record

    db.get_settings_by_owner.side_effect = lambda owner_id: coach_record.model_copy(update={"owner_id": owner_id})
    db.save_settings.side_effect = save
    service = InheritanceService(db)

    results = await service.bulk_update_inheritance(["coach-1", "coach-bad"], enabled=False)

    assert [r["status"] for r in results] == ["success", "error"]
    assert results[1]["coachId"] == "coach-bad"
    assert saved[0].inheritance.enabled is False


@pytest.mark.asyncio
async def test_bulk_update_requires_a_change(db):
    with pytest.raises(ValidationError):
        await InheritanceService(db).bulk_update_inheritance(["coach-1"])


@pytest.mark.asyncio
async def test_inheritance_tree(db, coach_record):
    db.get_settings_by_owner.return_value = with_customization(coach_record, FieldRef.AI_TONE, "casual")
    service = InheritanceService(db)

    tree = await service.get_inheritance_tree("coach-1")

    assert tree["owner"]["ownerId"] == "coach-1"
    assert tree["customizations"][0]["fieldPath"] == "aiKnowledge.responseSettings.tone"
    assert tree["parent"]["ownerId"] == "admin-1"
    assert tree["effective"]["aiKnowledge"]["responseSettings"]["tone"] == "casual"


@pytest.mark.asyncio
async def test_resolve_knowledge_base_uses_default_kb(db, make_kb):
    db.get_default_knowledge_base.return_value = make_kb()
    service = InheritanceService(db)

    kb = await service.resolve_knowledge_base("coach-1")

    assert kb.id == "kb-1"
    assert kb.response_settings.tone.value == "professional"


@pytest.mark.asyncio
async def test_resolve_knowledge_base_none_when_no_kb(db):
    db.get_default_knowledge_base.return_value = None
    assert await InheritanceService(db).resolve_knowledge_base("coach-1") is None


@pytest.mark.asyncio
async def test_resolve_knowledge_base_prefers_selected_kb(db, coach_record, make_kb):
    record = coach_record.model_copy(update={
        "ai_knowledge": coach_record.ai_knowledge.model_copy(update={"use_default": False, "knowledge_base_id": "kb-2"}),
    })
    db.get_settings_by_owner.return_value = record
    db.get_knowledge_base.return_value = make_kb(id="kb-2", is_default=False)
    service = InheritanceService(db)

    kb = await service.resolve_knowledge_base("coach-1")

    assert kb.id == "kb-2"
    db.get_default_knowledge_base.assert_not_awaited()


@pytest.mark.asyncio
async def test_resolve_knowledge_base_honors_customized_kb_id(db, coach_record, make_kb):
    db.get_settings_by_owner.return_value = with_customization(coach_record, FieldRef.AI_KNOWLEDGE_BASE_ID, "kb-custom")
    db.get_knowledge_base.return_value = make_kb(id="kb-custom", is_default=False)
    service = InheritanceService(db)

    effective = await service.get_effective_settings("coach-1")
    kb = await service.resolve_knowledge_base("coach-1")

    assert effective.ai_knowledge.use_default is True
    assert kb.id == "kb-custom"
    db.get_knowledge_base.assert_awaited_with("kb-custom")
    db.get_default_knowledge_base.assert_not_awaited()


@pytest.mark.asyncio
async def test_resolve_knowledge_base_falls_back_when_selected_kb_inactive(db, coach_record, make_kb):
    db.get_settings_by_owner.return_value = with_customization(coach_record, FieldRef.AI_KNOWLEDGE_BASE_ID, "kb-old")
    db.get_knowledge_base.return_value = make_kb(id="kb-old", is_active=False, is_default=False)
    db.get_default_knowledge_base.return_value = make_kb(id="kb-default")

    kb = await InheritanceService(db).resolve_knowledge_base("coach-1")

    assert kb.id == "kb-default"


# --- section updates and resets ---

def test_section_updates_merge_into_own_sections(admin_record, coach_record):
    record = with_section_updates(coach_record, {
        "aiKnowledge": {"useDefault": False, "systemPrompt": "Coach prompt"},
        "advanced": {"spamProtection": {"maxMessagesPerHour": 3}},
    }, name="My settings")

    assert record.name == "My settings"
    assert record.advanced.spam_protection.max_messages_per_hour == 3
    assert record.advanced.spam_protection.enabled is True
    assert record.advanced.message_retention.days == 90
    assert record.version == coach_record.version

    effective = resolve(record, lookup(admin_record))
    assert effective.ai_knowledge.system_prompt == "Coach prompt"
    assert effective.ai_knowledge.response_settings is None
    assert effective.advanced.spam_protection.max_messages_per_hour == 3


def test_section_updates_keep_customizations(coach_record):
    customized = with_customization(coach_record, FieldRef.AI_TONE, "casual")
    record = with_section_updates(customized, {"analytics": {"enabled": False}})
    assert record.inheritance.find("aiKnowledge.responseSettings.tone").value == "casual"


def test_section_updates_reject_unknown_and_invalid_values(coach_record):
    with pytest.raises(ValidationError, match="Unknown settings sections"):
        with_section_updates(coach_record, {"inheritance": {"enabled": False}})
    with pytest.raises(ValidationError):
        with_section_updates(coach_record, {"advanced": {"messageRetention": {"days": 0}}})


def test_reset_scoped_section_drops_its_customizations(coach_record):
    record = with_customization(coach_record, FieldRef.AI_TONE, "casual")
    record = with_customization(record, FieldRef.HOURS_TIMEZONE, "UTC")
    record = with_section_updates(record, {
        "aiKnowledge": {"useDefault": False, "systemPrompt": "Own"},
        "businessHours": {"useDefault": False},
        "notifications": {"enabled": False},
    })

    reset = reset_sections(record, ResetScope.AI)

    assert reset.ai_knowledge.use_default is True
    assert reset.ai_knowledge.system_prompt is None
    assert reset.business_hours.use_default is False
    assert reset.notifications.enabled is False
    assert [c.field_path for c in reset.inheritance.customizations] == ["businessHours.timezone"]


def test_reset_all_leaves_local_sections(coach_record):
    record = with_customization(coach_record, FieldRef.AI_TONE, "casual")
    record = with_section_updates(record, {"autoReplyRules": {"useDefault": False}, "analytics": {"enabled": False}})

    reset = reset_sections(record, ResetScope.ALL)

    assert reset.inheritance.customizations == []
    assert reset.auto_reply_rules.use_default is True
    assert reset.analytics.enabled is False
    assert reset.inheritance.enabled is True


@pytest.mark.asyncio
async def test_update_coach_sections_is_compare_and_swap(db, cache):
    service = InheritanceService(db, cache)

    saved = await service.update_coach_sections("coach-1", {"messageFiltering": {"enabled": True}})

    assert saved.version == 4
    assert saved.message_filtering.enabled is True
    cache.delete.assert_awaited_once_with("effective_settings:coach-1")


@pytest.mark.asyncio
async def test_reset_coach_settings_persists(db, coach_record):
    db.get_settings_by_owner.return_value = with_customization(coach_record, FieldRef.AI_TONE, "casual")
    service = InheritanceService(db)

    saved = await service.reset_coach_settings("coach-1", ResetScope.AI)

    assert saved.inheritance.customizations == []
    db.save_settings.assert_awaited_once()


@pytest.mark.asyncio
async def test_create_admin_settings_can_become_default(db, admin_record):
    db.create_settings.side_effect = lambda record: record.model_copy(update={"id": "admin-settings-2"})
    db.set_default_settings.return_value = admin_record.model_copy(update={"id": "admin-settings-2"})
    service = InheritanceService(db)

    created = await service.create_admin_settings(
        "admin-1", "Defaults", sections={"businessHours": {"afterHoursMessage": "Closed"}}, is_default=True
    )

    stored = db.create_settings.await_args.args[0]
    assert stored.owner_type == OwnerType.ADMIN
    assert stored.inheritance.enabled is False
    assert stored.business_hours.after_hours_message == "Closed"
    db.set_default_settings.assert_awaited_once_with("admin-settings-2")
    assert created.id == "admin-settings-2"


@pytest.mark.asyncio
async def test_update_admin_settings_loads_by_id(db, admin_record):
    db.get_settings_by_id.return_value = admin_record
    service = InheritanceService(db)

    saved = await service.update_admin_settings("admin-settings-1", {"analytics": {"enabled": True}})

    assert saved.analytics.enabled is True
    assert saved.owner_id == "admin-1"
    db.get_settings_by_owner.assert_not_awaited()


@pytest.mark.asyncio
async def test_admin_operations_reject_coach_records(db, coach_record):
    db.get_settings_by_id.return_value = coach_record
    service = InheritanceService(db)

    with pytest.raises(NotFoundError):
        await service.update_admin_settings("coach-settings-1", {"analytics": {"enabled": True}})
    with pytest.raises(NotFoundError):
        await service.delete_admin_settings("coach-settings-1")
    db.save_settings.assert_not_awaited()
    db.deactivate_settings.assert_not_awaited()


@pytest.mark.asyncio
async def test_delete_admin_settings_deactivates(db, admin_record, cache):
    record = admin_record.model_copy(update={"is_default": False})
    db.get_settings_by_id.return_value = record
    service = InheritanceService(db, cache)

    await service.delete_admin_settings("admin-settings-1")

    db.deactivate_settings.assert_awaited_once_with(record)
    cache.delete.assert_awaited_once_with("effective_settings:admin-1")
