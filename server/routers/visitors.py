"""Visitor tag routes."""

from fastapi import APIRouter, Depends, Query

from core.container import container
from services.visitors import VisitorService

router = APIRouter(prefix="/api/v1/visitor", tags=["visitors"])


@router.get("/{site_id}/{visitor_id}/has-tag")
async def has_tag(
    site_id: str,
    visitor_id: str,
    tag: str = Query(..., min_length=1),
    visitors: VisitorService = Depends(lambda: container.visitors())
):
    return {"hasTag": await visitors.has_tag(site_id, visitor_id, tag)}


@router.get("/{site_id}/{visitor_id}/tags")
async def get_tags(
    site_id: str,
    visitor_id: str,
    visitors: VisitorService = Depends(lambda: container.visitors())
):
    return {"tags": await visitors.get_tags(site_id, visitor_id)}
