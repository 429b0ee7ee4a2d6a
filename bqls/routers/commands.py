"""
Editor commands
- clear cache
- update cache from the open documents (or explicit texts)
- dry run one document
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from bqls.core.documents import DocumentNotOpenError
from bqls.deps import Services, get_services
from bqls.models.diagnostics import Diagnostic
from bqls.smart_logger import SmartLogger


router = APIRouter(prefix="/commands", tags=["Commands"])


class UpdateCacheRequest(BaseModel):
    texts: Optional[List[str]] = Field(
        default=None,
        description="Texts that gate column refresh; defaults to the open documents",
    )


class DryRunRequest(BaseModel):
    uri: str = Field(..., description="Document uri")
    text: Optional[str] = Field(default=None, description="Document text; defaults to the open document's text")


class DryRunResponse(BaseModel):
    status: str  # success, superseded
    uri: str
    cost_label: Optional[str] = None
    diagnostics: List[Diagnostic] = []
    request_id: Optional[int] = None


@router.post("/clear-cache")
async def clear_cache(services: Services = Depends(get_services)) -> Dict[str, Any]:
    await services.cache.clear()
    return {"status": "success", "message": "The cache was cleared successfully."}


@router.post("/update-cache")
async def update_cache(
    request: Optional[UpdateCacheRequest] = None,
    services: Services = Depends(get_services),
) -> Dict[str, Any]:
    texts = request.texts if request is not None and request.texts is not None else services.documents.texts()
    report = await services.fetcher.refresh(texts)
    if report.aborted:
        SmartLogger.log(
            "ERROR",
            "commands.update_cache.aborted",
            category="commands",
            params={"error": report.error},
        )
    return report.to_dict()


@router.post("/dry-run", response_model=DryRunResponse)
async def dry_run(request: DryRunRequest, services: Services = Depends(get_services)) -> DryRunResponse:
    if request.text is not None:
        services.documents.open(request.uri, request.text)
    try:
        text = services.documents.text_of(request.uri)
    except DocumentNotOpenError:
        raise HTTPException(status_code=404, detail=f"Document is not open: {request.uri}")

    report = await services.engine.run(request.uri, text)
    if report is None:
        return DryRunResponse(status="superseded", uri=request.uri)
    return DryRunResponse(
        status="success",
        uri=request.uri,
        cost_label=report.cost_label,
        diagnostics=report.diagnostics,
        request_id=report.request_id,
    )
