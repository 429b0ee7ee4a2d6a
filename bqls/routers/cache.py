"""
Schema cache read API
- read side for completion / hover consumers
- every response reflects the latest committed replace of the scope it reads
"""
from typing import List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from bqls.deps import Services, get_services


router = APIRouter(prefix="/cache", tags=["Cache"])


# ============== Models ==============

class ProjectOut(BaseModel):
    id: str


class DatasetOut(BaseModel):
    project: str
    id: str
    location: Optional[str] = None


class ColumnOut(BaseModel):
    name: str
    data_type: str


class TableOut(BaseModel):
    project: str
    dataset: str
    id: str
    columns: List[ColumnOut] = []


# ============== Endpoints ==============

@router.get("/projects", response_model=List[ProjectOut])
async def list_projects(services: Services = Depends(get_services)):
    return [ProjectOut(id=p.id) for p in await services.cache.list_projects()]


@router.get("/projects/{project}/datasets", response_model=List[DatasetOut])
async def list_datasets(project: str, services: Services = Depends(get_services)):
    return [
        DatasetOut(project=d.project, id=d.id, location=d.location)
        for d in await services.cache.list_datasets(project)
    ]


@router.get("/projects/{project}/datasets/{dataset}/tables", response_model=List[TableOut])
async def list_tables(project: str, dataset: str, services: Services = Depends(get_services)):
    return [
        TableOut(
            project=t.project,
            dataset=t.dataset,
            id=t.id,
            columns=[ColumnOut(name=c.name, data_type=c.data_type) for c in t.columns],
        )
        for t in await services.cache.list_tables(project, dataset)
    ]


@router.get("/projects/{project}/datasets/{dataset}/tables/{table}/columns", response_model=List[ColumnOut])
async def list_columns(project: str, dataset: str, table: str, services: Services = Depends(get_services)):
    return [
        ColumnOut(name=c.name, data_type=c.data_type)
        for c in await services.cache.list_columns(project, dataset, table)
    ]
