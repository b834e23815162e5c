# /autoreply/routes/settings.py

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from autoreply.config.settings import settings
from autoreply.models.api import (
    AdminSettingsCreate,
    APIResponse,
    BulkInheritanceRequest,
    CustomizationRequest,
    ResetRequest,
    SettingsUpdate,
)
from autoreply.models.config import OwnerType, ResetScope
from autoreply.models.fields import FieldRef
from autoreply.services.db_service import db_service
from autoreply.services.inheritance_service import inheritance_service
from autoreply.utils.dependencies import ensure_owner_access, require_admin, verify_jwt_token
from autoreply.utils.errors import ValidationError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/settings",
    tags=["Settings"],
    dependencies=[Depends(verify_jwt_token)]
)


def _record_data(record) -> dict:
    return record.model_dump(by_alias=True, mode="json")


@router.get("/fields", response_model=APIResponse)
async def list_customizable_fields():
    return APIResponse(
        success=True,
        message="Customizable field paths",
        data={"fieldPaths": FieldRef.supported_paths()},
        version=settings.api_version,
    )


@router.get("", response_model=APIResponse)
async def list_settings(owner_type: OwnerType = Query(OwnerType.COACH, alias="ownerType"),
                        admin: dict = Depends(require_admin)):
    records = await db_service.list_settings(owner_type)
    return APIResponse(
        success=True,
        message=f"{len(records)} {owner_type.value} configurations",
        data={"settings": [_record_data(record) for record in records]},
        version=settings.api_version,
    )


@router.post("/bulk-inheritance", response_model=APIResponse)
async def bulk_update_inheritance(payload: BulkInheritanceRequest, admin: dict = Depends(require_admin)):
    results = await inheritance_service.bulk_update_inheritance(
        payload.coach_ids, enabled=payload.enabled, inherit_from=payload.inherit_from
    )
    failed = sum(1 for result in results if result["status"] == "error")
    logger.info(f"Bulk inheritance update by {admin.get('sub')}: {len(results) - failed} ok, {failed} failed")
    return APIResponse(
        success=failed == 0,
        message=f"Updated {len(results) - failed} of {len(results)} coaches",
        data={"results": results},
        version=settings.api_version,
    )


def _require_changes(payload: SettingsUpdate) -> dict:
    updates = payload.section_updates()
    if not updates and payload.name is None and payload.description is None:
        raise ValidationError("Nothing to update: send at least one section, name or description")
    return updates


@router.post("/admin", response_model=APIResponse, status_code=201)
async def create_admin_settings(payload: AdminSettingsCreate, admin: dict = Depends(require_admin)):
    record = await inheritance_service.create_admin_settings(
        admin["sub"],
        payload.name,
        description=payload.description,
        sections=payload.section_updates(),
        is_default=payload.is_default,
    )
    return APIResponse(
        success=True,
        message="Admin settings created",
        data=_record_data(record),
        version=settings.api_version,
    )


@router.patch("/admin/{settings_id}", response_model=APIResponse, dependencies=[Depends(require_admin)])
async def update_admin_settings(settings_id: str, payload: SettingsUpdate):
    updates = _require_changes(payload)
    record = await inheritance_service.update_admin_settings(
        settings_id, updates, name=payload.name, description=payload.description
    )
    return APIResponse(
        success=True,
        message="Admin settings updated",
        data=_record_data(record),
        version=settings.api_version,
    )


@router.delete("/admin/{settings_id}", response_model=APIResponse, dependencies=[Depends(require_admin)])
async def delete_admin_settings(settings_id: str):
    await inheritance_service.delete_admin_settings(settings_id)
    return APIResponse(success=True, message=f"Admin settings {settings_id} deleted", version=settings.api_version)


@router.get("/{owner_id}/effective", response_model=APIResponse)
async def get_effective_settings(owner_id: str, owner_type: OwnerType = Query(OwnerType.COACH, alias="ownerType"),
                                 user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, owner_id)
    effective = await inheritance_service.get_effective_settings(owner_id, owner_type)
    return APIResponse(
        success=True,
        message="Effective settings resolved",
        data=effective.model_dump(by_alias=True, mode="json"),
        version=settings.api_version,
    )


@router.get("/{coach_id}/inheritance-tree", response_model=APIResponse)
async def get_inheritance_tree(coach_id: str, user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, coach_id)
    tree = await inheritance_service.get_inheritance_tree(coach_id)
    return APIResponse(success=True, message="Inheritance tree", data=tree, version=settings.api_version)


@router.post("/{coach_id}/customizations", response_model=APIResponse)
async def add_customization(coach_id: str, payload: CustomizationRequest, user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, coach_id)
    record = await inheritance_service.add_customization(coach_id, payload.field_path, payload.value)
    return APIResponse(
        success=True,
        message=f"Customized {payload.field_path}",
        data=_record_data(record),
        version=settings.api_version,
    )


@router.delete("/{coach_id}/customizations", response_model=APIResponse)
async def remove_customization(coach_id: str, field_path: str = Query(..., alias="fieldPath"),
                               user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, coach_id)
    record = await inheritance_service.remove_customization(coach_id, field_path)
    return APIResponse(
        success=True,
        message=f"Removed customization {field_path}",
        data=_record_data(record),
        version=settings.api_version,
    )


@router.patch("/{coach_id}", response_model=APIResponse)
async def update_coach_settings(coach_id: str, payload: SettingsUpdate, user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, coach_id)
    updates = _require_changes(payload)
    record = await inheritance_service.update_coach_sections(
        coach_id, updates, name=payload.name, description=payload.description
    )
    return APIResponse(
        success=True,
        message="Settings updated",
        data=_record_data(record),
        version=settings.api_version,
    )


@router.post("/{coach_id}/reset", response_model=APIResponse)
async def reset_coach_settings(coach_id: str, payload: Optional[ResetRequest] = None,
                               user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, coach_id)
    scope = payload.reset_type if payload else ResetScope.ALL
    record = await inheritance_service.reset_coach_settings(coach_id, scope)
    return APIResponse(
        success=True,
        message=f"Settings reset ({scope.value})",
        data=_record_data(record),
        version=settings.api_version,
    )


@router.get("/{owner_id}/customizations/check", response_model=APIResponse)
async def is_field_customized(owner_id: str, field_path: str = Query(..., alias="fieldPath"),
                              user: dict = Depends(verify_jwt_token)):
    ensure_owner_access(user, owner_id)
    customized = await inheritance_service.is_field_customized(owner_id, field_path)
    return APIResponse(
        success=True,
        message="Customization status",
        data={"fieldPath": field_path, "isCustomized": customized},
        version=settings.api_version,
    )


@router.post("/{settings_id}/set-default", response_model=APIResponse, dependencies=[Depends(require_admin)])
async def set_default_settings(settings_id: str):
    record = await inheritance_service.set_default_settings(settings_id)
    return APIResponse(
        success=True,
        message=f"Settings {settings_id} are now the default for {record.owner_type.value}",
        data=_record_data(record),
        version=settings.api_version,
    )
