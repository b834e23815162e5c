# /autoreply/routes/knowledge_base.py

import logging
from fastapi import APIRouter, Depends

from autoreply.config.settings import settings
from autoreply.models.api import APIResponse, KnowledgeBaseUpdate
from autoreply.models.config import KnowledgeBase
from autoreply.services.db_service import db_service
from autoreply.utils.dependencies import require_admin
from autoreply.utils.errors import NotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/knowledge-bases",
    tags=["Knowledge Base"],
    dependencies=[Depends(require_admin)]
)


def _kb_data(kb: KnowledgeBase) -> dict:
    return kb.model_dump(by_alias=True, mode="json")


@router.get("", response_model=APIResponse)
async def list_knowledge_bases():
    kbs = await db_service.list_knowledge_bases()
    return APIResponse(
        success=True,
        message=f"{len(kbs)} knowledge bases",
        data={"knowledgeBases": [_kb_data(kb) for kb in kbs]},
        version=settings.api_version,
    )


@router.post("", response_model=APIResponse, status_code=201)
async def create_knowledge_base(payload: KnowledgeBase, admin: dict = Depends(require_admin)):
    payload = payload.model_copy(update={"id": None, "created_by": admin.get("sub")})
    kb = await db_service.create_knowledge_base(payload)
    logger.info(f"Knowledge base {kb.id} created by {admin.get('sub')}")
    return APIResponse(success=True, message="Knowledge base created", data=_kb_data(kb), version=settings.api_version)


@router.get("/{kb_id}", response_model=APIResponse)
async def get_knowledge_base(kb_id: str):
    kb = await db_service.get_knowledge_base(kb_id)
    if not kb:
        raise NotFoundError(f"Knowledge base {kb_id} not found")
    return APIResponse(success=True, message="Knowledge base", data=_kb_data(kb), version=settings.api_version)


@router.patch("/{kb_id}", response_model=APIResponse)
async def update_knowledge_base(kb_id: str, payload: KnowledgeBaseUpdate):
    kb = await db_service.update_knowledge_base(kb_id, payload.to_updates())
    return APIResponse(success=True, message="Knowledge base updated", data=_kb_data(kb), version=settings.api_version)


@router.delete("/{kb_id}", response_model=APIResponse)
async def delete_knowledge_base(kb_id: str):
    await db_service.delete_knowledge_base(kb_id)
    return APIResponse(success=True, message="Knowledge base deleted", version=settings.api_version)


@router.post("/{kb_id}/set-default", response_model=APIResponse)
async def set_default_knowledge_base(kb_id: str):
    kb = await db_service.set_default_knowledge_base(kb_id)
    return APIResponse(
        success=True,
        message=f"Knowledge base {kb_id} is now the default",
        data=_kb_data(kb),
        version=settings.api_version,
    )
