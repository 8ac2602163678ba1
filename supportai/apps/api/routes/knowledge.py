from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from pydantic import AnyHttpUrl, BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from supportai.apps.api.deps import get_current_tenant, get_db
from supportai.apps.api.openapi import DEFAULT_ERROR_RESPONSES
from supportai.apps.api.response import success_response
from supportai.core.errors import KnowledgeSourceNotFoundError
from supportai.domain.types import KnowledgeSource, Tenant
from supportai.persistence.repos import sources as sources_repo
from supportai.services import ingestion
from supportai.services.ingest_queue import enqueue_ingestion_job


logger = logging.getLogger(__name__)

router = APIRouter(prefix="/knowledge", tags=["knowledge"], responses=DEFAULT_ERROR_RESPONSES)


class UrlSourceRequest(BaseModel):
    url: AnyHttpUrl
    title: str | None = Field(default=None, max_length=256)


class ManualSourceRequest(BaseModel):
    text: str = Field(min_length=1)
    title: str | None = Field(default=None, max_length=256)


def _source_payload(source: KnowledgeSource, *, job_id: str | None = None) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "id": source.id,
        "type": source.type,
        "status": source.status,
        "version": source.version,
        "title": source.title,
        "file_name": source.file_name,
        "url": source.url,
        "metadata": source.metadata,
    }
    if job_id is not None:
        payload["job_id"] = job_id
    return payload


async def _enqueue_and_reload(
    db: AsyncSession, source: KnowledgeSource, job: ingestion.IngestionJobPayload
) -> dict[str, Any]:
    try:
        job_id = await enqueue_ingestion_job(job)
    except Exception as exc:  # noqa: BLE001 - the source must not stay in processing without a job
        logger.exception("ingestion_enqueue_failed source_id=%s", source.id)
        await ingestion.mark_enqueue_failed(db, job)
        raise HTTPException(
            status_code=503,
            detail={
                "code": "INGEST_QUEUE_UNAVAILABLE",
                "message": "Ingestion queue is unavailable; retry later",
                "source_id": source.id,
            },
        ) from exc
    # Inline jobs settle the source in another session; re-read the row.
    db.expire_all()
    current = await sources_repo.get_source(db, source.tenant_id, source.id)
    return _source_payload(current or source, job_id=job_id)


@router.get("")
async def list_sources(
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    sources = await sources_repo.list_sources(db, tenant.id)
    return success_response(request=request, data=[_source_payload(source) for source in sources])


@router.post("/files", status_code=202)
async def upload_file(
    request: Request,
    file: UploadFile = File(...),
    title: str | None = Form(default=None),
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    data = await file.read()
    source, job = await ingestion.create_file_source(
        db,
        tenant_id=tenant.id,
        filename=file.filename,
        content_type=file.content_type,
        data=data,
        title=title,
        request_id=getattr(request.state, "request_id", None),
    )
    return success_response(request=request, data=await _enqueue_and_reload(db, source, job))


@router.post("/urls", status_code=202)
async def add_url(
    payload: UrlSourceRequest,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    source, job = await ingestion.create_url_source(
        db,
        tenant_id=tenant.id,
        url=str(payload.url),
        title=payload.title,
        request_id=getattr(request.state, "request_id", None),
    )
    return success_response(request=request, data=await _enqueue_and_reload(db, source, job))


@router.post("/manual", status_code=202)
async def add_manual_text(
    payload: ManualSourceRequest,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    source, job = await ingestion.create_manual_source(
        db,
        tenant_id=tenant.id,
        text=payload.text,
        title=payload.title,
        request_id=getattr(request.state, "request_id", None),
    )
    return success_response(request=request, data=await _enqueue_and_reload(db, source, job))


@router.get("/{source_id}")
async def get_source(
    source_id: str,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    source = await sources_repo.get_source(db, tenant.id, source_id)
    if source is None:
        raise KnowledgeSourceNotFoundError(source_id)
    return success_response(request=request, data=_source_payload(source))


@router.post("/{source_id}/reingest", status_code=202)
async def reingest(
    source_id: str,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    source, job = await ingestion.reingest_source(
        db, tenant.id, source_id, request_id=getattr(request.state, "request_id", None)
    )
    return success_response(request=request, data=await _enqueue_and_reload(db, source, job))


@router.delete("/{source_id}")
async def delete_source(
    source_id: str,
    request: Request,
    tenant: Tenant = Depends(get_current_tenant),
    db: AsyncSession = Depends(get_db),
) -> dict:
    source = await ingestion.delete_source(db, tenant.id, source_id)
    return success_response(request=request, data={"id": source.id, "deleted": True})
