"""
Event Mapping

Maps Fatture in Cloud event types to the local resource they touch and what
happened to it. The table is consulted in order and the first substring
that occurs in the event type wins.
"""

from typing import NamedTuple, Optional, Tuple

from fic_middleware.models.resources import ResourceAction, ResourceType


class EventMapping(NamedTuple):
    resource_type: ResourceType
    action: ResourceAction


# Event type substring to (resource type, action)
EVENT_RESOURCE_MAP: Tuple[Tuple[str, EventMapping], ...] = (
    # Entities
    ("entities.clients.create", EventMapping(ResourceType.CLIENT, ResourceAction.CREATED)),
    ("entities.clients.update", EventMapping(ResourceType.CLIENT, ResourceAction.UPDATED)),
    ("entities.clients.delete", EventMapping(ResourceType.CLIENT, ResourceAction.DELETED)),
    ("entities.suppliers.create", EventMapping(ResourceType.SUPPLIER, ResourceAction.CREATED)),
    ("entities.suppliers.update", EventMapping(ResourceType.SUPPLIER, ResourceAction.UPDATED)),
    ("entities.suppliers.delete", EventMapping(ResourceType.SUPPLIER, ResourceAction.DELETED)),

    # Issued documents
    ("issued_documents.invoices.create", EventMapping(ResourceType.INVOICE, ResourceAction.CREATED)),
    ("issued_documents.invoices.update", EventMapping(ResourceType.INVOICE, ResourceAction.UPDATED)),
    ("issued_documents.invoices.delete", EventMapping(ResourceType.INVOICE, ResourceAction.DELETED)),
    ("issued_documents.quotes.create", EventMapping(ResourceType.QUOTE, ResourceAction.CREATED)),
    ("issued_documents.quotes.update", EventMapping(ResourceType.QUOTE, ResourceAction.UPDATED)),
    ("issued_documents.quotes.delete", EventMapping(ResourceType.QUOTE, ResourceAction.DELETED)),
)


def map_event_type(event_type: str) -> Optional[EventMapping]:
    """
    Example:
        >>> map_event_type("it.fattureincloud.webhooks.entities.clients.create")
        EventMapping(resource_type=<ResourceType.CLIENT: 'client'>, action=<ResourceAction.CREATED: 'created'>)
    """
    for pattern, mapping in EVENT_RESOURCE_MAP:
        if pattern in event_type:
            return mapping
    return None
