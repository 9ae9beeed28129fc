"""
Fatture in Cloud Resource Models

Resource types reachable through webhooks and the normalized records the
worker stores for them.
"""

from enum import Enum
from typing import Any, Dict, Optional, Union

from pydantic import BaseModel, Field


class ResourceType(str, Enum):
    CLIENT = "client"
    SUPPLIER = "supplier"
    INVOICE = "invoice"
    QUOTE = "quote"


class ResourceAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


# API path (below /c/{company_id}) for each resource type
RESOURCE_PATHS: Dict[ResourceType, str] = {
    ResourceType.CLIENT: "entities/clients",
    ResourceType.SUPPLIER: "entities/suppliers",
    ResourceType.INVOICE: "issued_documents/invoices",
    ResourceType.QUOTE: "issued_documents/quotes",
}


class FicEntity(BaseModel):
    """Client or supplier"""

    fic_id: int
    name: Optional[str] = None
    code: Optional[str] = None
    vat_number: Optional[str] = None
    fic_created_at: Optional[str] = None
    fic_updated_at: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


class FicIssuedDocument(BaseModel):
    """Invoice or quote"""

    fic_id: int
    number: Optional[Union[int, str]] = None
    status: Optional[str] = None
    total_gross: Optional[float] = None
    date: Optional[str] = None
    fic_created_at: Optional[str] = None
    raw: Dict[str, Any] = Field(default_factory=dict)


def normalize_resource(
    resource_type: ResourceType, data: Dict[str, Any]
) -> Union[FicEntity, FicIssuedDocument]:
    """Map an API payload onto the stored record for its type."""
    if resource_type in (ResourceType.CLIENT, ResourceType.SUPPLIER):
        return FicEntity(
            fic_id=data["id"],
            name=data.get("name"),
            code=data.get("code"),
            vat_number=data.get("vat_number"),
            fic_created_at=data.get("created_at"),
            fic_updated_at=data.get("updated_at"),
            raw=data,
        )

    total = next(
        (
            data[field]
            for field in ("amount_gross", "amount_net", "total", "total_gross")
            if data.get(field) is not None
        ),
        None,
    )

    return FicIssuedDocument(
        fic_id=data["id"],
        number=data.get("number"),
        status=data.get("status"),
        total_gross=total,
        date=data.get("date"),
        fic_created_at=data.get("created_at"),
        raw=data,
    )

