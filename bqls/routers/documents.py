"""
Document lifecycle
- open / change / save / close notifications from the editor
- save triggers a dry run when dry_run_on_save is enabled
- open triggers a background cache refresh when refresh_on_open is enabled
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from bqls.config import settings
from bqls.core.documents import DocumentNotOpenError
from bqls.deps import Services, get_services
from bqls.models.diagnostics import Diagnostic


router = APIRouter(prefix="/documents", tags=["Documents"])


class DocumentText(BaseModel):
    uri: str = Field(..., description="Document uri")
    text: str = Field(..., description="Full document text")


class DocumentSave(BaseModel):
    uri: str = Field(..., description="Document uri")
    text: Optional[str] = Field(default=None, description="Saved text, if it differs from the last change")


class DocumentRef(BaseModel):
    uri: str = Field(..., description="Document uri")


@router.post("/open")
async def open_document(request: DocumentText, services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.documents.open(request.uri, request.text)
    refresh_scheduled = False
    if settings.refresh_on_open:
        services.spawn(services.fetcher.refresh(services.documents.texts()), name="refresh_on_open")
        refresh_scheduled = True
    return {"status": "success", "uri": request.uri, "refresh_scheduled": refresh_scheduled}


@router.post("/change")
async def change_document(request: DocumentText, services: Services = Depends(get_services)) -> Dict[str, Any]:
    try:
        services.documents.change(request.uri, request.text)
    except DocumentNotOpenError:
        raise HTTPException(status_code=404, detail=f"Document is not open: {request.uri}")
    return {"status": "success", "uri": request.uri}


@router.post("/save")
async def save_document(request: DocumentSave, services: Services = Depends(get_services)) -> Dict[str, Any]:
    if request.text is not None:
        services.documents.open(request.uri, request.text)
    try:
        text = services.documents.text_of(request.uri)
    except DocumentNotOpenError:
        raise HTTPException(status_code=404, detail=f"Document is not open: {request.uri}")

    dry_run_scheduled = False
    if settings.dry_run_on_save:
        services.spawn(services.engine.run(request.uri, text), name="dry_run_on_save")
        dry_run_scheduled = True
    return {"status": "success", "uri": request.uri, "dry_run_scheduled": dry_run_scheduled}


@router.post("/close")
async def close_document(request: DocumentRef, services: Services = Depends(get_services)) -> Dict[str, Any]:
    services.documents.close(request.uri)
    services.engine.forget(request.uri)
    services.events.forget(request.uri)
    return {"status": "success", "uri": request.uri}


@router.get("/diagnostics", response_model=List[Diagnostic])
async def get_diagnostics(
    uri: str = Query(..., description="Document uri"),
    services: Services = Depends(get_services),
) -> List[Diagnostic]:
    """Diagnostics most recently published for a document (empty when none)."""
    return services.events.latest_diagnostics.get(uri, [])
