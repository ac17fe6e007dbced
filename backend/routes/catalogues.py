"""Metered resource creation.

Each endpoint creates the resource through the entitlement checker's
guarded insert, so the plan limit is enforced at write time. Writes into
an existing catalogue are limited to its owner and team members. Only the
fields the engine needs are stored here; the catalogue editor owns the rest.

Endpoints:
- POST /api/catalogues
- POST /api/catalogues/{catalogue_id}/products
- POST /api/catalogues/{catalogue_id}/categories
- POST /api/catalogues/{catalogue_id}/exports
"""
import uuid
from typing import Optional

from fastapi import APIRouter, Request
from pydantic import BaseModel

from middleware import require_auth
from models import EntitlementDecision, Rejection, ResourceKind
from services.entitlements import entitlement_checker
from utils.errors import RejectionError

router = APIRouter(prefix="/api/catalogues", tags=["catalogues"])


class CreateResourceRequest(BaseModel):
    name: str
    description: Optional[str] = None


class CreateExportRequest(BaseModel):
    format: str = "pdf"


async def _create(request: Request, kind: ResourceKind, document: dict, scope_id: Optional[str] = None):
    user = await require_auth(request)
    result = await entitlement_checker.create_within_limit(
        user["id"], kind, document, scope_id=scope_id, email=user.get("email")
    )
    if isinstance(result, EntitlementDecision):
        raise RejectionError.from_rejection(result.to_rejection())
    if isinstance(result, Rejection):
        raise RejectionError.from_rejection(result)
    return {"success": True, kind.value: result}


@router.post("")
async def create_catalogue(body: CreateResourceRequest, request: Request):
    return await _create(request, ResourceKind.CATALOGUE, {
        "catalogue_id": str(uuid.uuid4()),
        "name": body.name,
        "description": body.description,
    })


@router.post("/{catalogue_id}/products")
async def create_product(catalogue_id: str, body: CreateResourceRequest, request: Request):
    return await _create(request, ResourceKind.PRODUCT, {
        "product_id": str(uuid.uuid4()),
        "name": body.name,
        "description": body.description,
    }, scope_id=catalogue_id)


@router.post("/{catalogue_id}/categories")
async def create_category(catalogue_id: str, body: CreateResourceRequest, request: Request):
    return await _create(request, ResourceKind.CATEGORY, {
        "category_id": str(uuid.uuid4()),
        "name": body.name,
        "description": body.description,
    }, scope_id=catalogue_id)


@router.post("/{catalogue_id}/exports")
async def record_export(catalogue_id: str, body: CreateExportRequest, request: Request):
    """Meter an export of the catalogue against the caller's monthly allowance."""
    return await _create(request, ResourceKind.EXPORT, {
        "export_id": str(uuid.uuid4()),
        "catalogue_id": catalogue_id,
        "format": body.format,
    })
