"""
GET /catalog, GET /dimensions, GET /values/{dimension} -- metadata endpoints.
"""
from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from src.core.errors import ExecutionError
from src.db.executor import QueryExecutor, get_executor
from src.governance.semantic_loader import load_engagement_model

router = APIRouter()



class DimensionItem(BaseModel):
    name: str
    column: str
    label: str
    synonyms: list[str]


class StageItem(BaseModel):
    name: str
    label: str


class CatalogResponse(BaseModel):
    table: str
    dimensions: list[DimensionItem]
    funnel_stages: list[StageItem]
    programs: list[str]
    program_aliases: dict[str, list[str]]
    regions: list[str]



@router.get("/dimensions")
def list_dimensions() -> dict:
    """Return all breakdown dimension names (lightweight)."""
    model = load_engagement_model()
    return {"dimensions": model.get_dimension_names()}


@router.get("/dimensions/detail", response_model=list[DimensionItem])
def list_dimensions_detail() -> list[DimensionItem]:
    model = load_engagement_model()
    return [DimensionItem(**d) for d in model.get_dimensions_list()]


@router.get("/values/{dimension}")
def list_values(dimension: str, executor: QueryExecutor = Depends(get_executor)) -> dict:
    """Live distinct values of one dimension, capped by ``distinct_value_cap``."""
    model = load_engagement_model()
    dim = model.dimension(dimension)
    if dim is None:
        raise HTTPException(status_code=404, detail=f"Unknown dimension '{dimension}'")
    try:
        values = executor.distinct_values(dim.column)
    except ExecutionError as exc:
        raise HTTPException(status_code=502, detail=exc.message)
    return {"dimension": dimension, "values": values}


@router.get("/catalog", response_model=CatalogResponse)
def full_catalog() -> CatalogResponse:
    """Return the semantic layer: table, dimensions, funnel stages, aliases."""
    model = load_engagement_model()
    return CatalogResponse(
        table=model.table,
        dimensions=[DimensionItem(**d) for d in model.get_dimensions_list()],
        funnel_stages=[StageItem(name=s.name, label=s.label) for s in model.funnel_stages],
        programs=model.get_canonical_programs(),
        program_aliases={alias: list(names) for alias, names in model.program_aliases.items()},
        regions=list(model.canonical_regions),
    )
