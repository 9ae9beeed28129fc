"""
Event Store

Audit trail of ingested webhook events, one row per (delivery, resource id).

Rows are deduplicated by key: the provider's CloudEvents id when the
delivery has one, else the (event type, resource id, occurred at) tuple.
Status only moves forward; a ``processed`` row is never regressed.

DynamoDB Table Structure:
    Partition Key: dedup_key (String)
    GSI account_id-created_at-index: account_id (HASH), created_at (RANGE)
"""

from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Tuple

from fic_middleware.models.records import EventStatus, IngestedEvent, utcnow
from fic_middleware.services.dynamodb_service import DynamoDBService
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

ACCOUNT_INDEX = "account_id-created_at-index"


def build_dedup_key(
    account_id: str,
    resource_id: int,
    event_type: str,
    ce_id: Optional[str] = None,
    occurred_at: Optional[datetime] = None,
) -> str:
    """
    Example:
        >>> build_dedup_key("7", 123, "it.x.webhooks.entities.clients.create", ce_id="evt-1")
        '7#ce#evt-1#123'
    """
    if ce_id:
        return f"{account_id}#ce#{ce_id}#{resource_id}"
    stamp = occurred_at.isoformat() if occurred_at else "none"
    return f"{account_id}#tuple#{event_type}#{resource_id}#{stamp}"


def _feed_key(event: IngestedEvent) -> Tuple[Any, ...]:
    if event.ce_id:
        return ("ce", event.ce_id, event.fic_resource_id)
    return ("tuple", event.event_type, event.fic_resource_id, event.occurred_at)


def merge_event_feed(events: Iterable[IngestedEvent]) -> List[IngestedEvent]:
    """
    Collapse duplicate deliveries of one logical event for display.

    Events sharing a ce_id (or, without one, the type/resource/time tuple)
    are merged; a ``processed`` row wins over any other status, otherwise the
    first row seen is kept. Input order is preserved.
    """
    merged: Dict[Tuple[Any, ...], IngestedEvent] = {}
    for event in events:
        key = _feed_key(event)
        current = merged.get(key)
        if current is None:
            merged[key] = event
        elif event.status == EventStatus.PROCESSED and current.status != EventStatus.PROCESSED:
            merged[key] = event
    return list(merged.values())


class EventStore:
    """Create-if-absent and forward-only status updates for ingested events"""

    def __init__(self, dynamodb_service: DynamoDBService, table_name: str):
        self.dynamodb = dynamodb_service
        self.table_name = table_name

    async def create_pending(
        self,
        account_id: str,
        event_type: str,
        resource_type: str,
        resource_id: int,
        ce_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Record a delivery as ``pending`` unless its dedup key already exists.

        Returns:
            True if a new row was written, False for a duplicate delivery
        """
        event = IngestedEvent(
            dedup_key=build_dedup_key(account_id, resource_id, event_type, ce_id, occurred_at),
            account_id=account_id,
            event_type=event_type,
            resource_type=resource_type,
            fic_resource_id=resource_id,
            ce_id=ce_id,
            occurred_at=occurred_at,
            payload=payload or {},
        )

        created = await self.dynamodb.put_item(
            self.table_name,
            event.model_dump(mode="json"),
            condition_expression="attribute_not_exists(dedup_key)",
        )

        if not created:
            logger.info(
                "Duplicate delivery ignored",
                extra={"dedup_key": event.dedup_key, "account_id": account_id},
            )
        return created

    async def mark_processed(
        self,
        account_id: str,
        event_type: str,
        resource_type: str,
        resource_id: int,
        ce_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> IngestedEvent:
        """Mark the row processed, creating it if ingestion never wrote one."""
        return await self._set_status(
            EventStatus.PROCESSED,
            account_id,
            event_type,
            resource_type,
            resource_id,
            ce_id,
            occurred_at,
            payload,
        )

    async def mark_error(
        self,
        account_id: str,
        event_type: str,
        resource_type: str,
        resource_id: int,
        error: str,
        ce_id: Optional[str] = None,
        occurred_at: Optional[datetime] = None,
        payload: Optional[Dict[str, Any]] = None,
    ) -> Optional[IngestedEvent]:
        """
        Mark the row failed.

        Returns:
            The updated row, or None when it was already processed
        """
        return await self._set_status(
            EventStatus.ERROR,
            account_id,
            event_type,
            resource_type,
            resource_id,
            ce_id,
            occurred_at,
            payload,
            error=error,
        )

    async def _set_status(
        self,
        status: EventStatus,
        account_id: str,
        event_type: str,
        resource_type: str,
        resource_id: int,
        ce_id: Optional[str],
        occurred_at: Optional[datetime],
        payload: Optional[Dict[str, Any]],
        error: Optional[str] = None,
    ) -> Optional[IngestedEvent]:
        dedup_key = build_dedup_key(account_id, resource_id, event_type, ce_id, occurred_at)
        now = utcnow().isoformat()

        defaults = {
            "account_id": account_id,
            "event_type": event_type,
            "resource_type": resource_type,
            "fic_resource_id": resource_id,
            "ce_id": ce_id,
            "occurred_at": occurred_at.isoformat() if occurred_at else None,
            "payload": payload or {},
            "created_at": now,
        }
        names = {f"#{field}": field for field in defaults}
        names.update({"#status": "status", "#updated_at": "updated_at", "#error": "error"})
        values: Dict[str, Any] = {f":{field}": value for field, value in defaults.items()}
        values.update({":status": status.value, ":updated_at": now})

        expression = "SET #status = :status, #updated_at = :updated_at, " + ", ".join(
            f"#{field} = if_not_exists(#{field}, :{field})" for field in defaults
        )
        condition = None
        if status == EventStatus.ERROR:
            expression += ", #error = :error"
            values[":error"] = error
            values[":processed"] = EventStatus.PROCESSED.value
            condition = "attribute_not_exists(dedup_key) OR #status <> :processed"
        else:
            expression += " REMOVE #error"

        item = await self.dynamodb.update_item(
            self.table_name,
            {"dedup_key": dedup_key},
            expression,
            expression_attribute_names=names,
            expression_attribute_values=values,
            condition_expression=condition,
        )
        return self._from_item(item) if item else None

    async def get(self, dedup_key: str) -> Optional[IngestedEvent]:
        item = await self.dynamodb.get_item(self.table_name, {"dedup_key": dedup_key})
        return self._from_item(item) if item else None

    async def list_for_account(
        self,
        account_id: str,
        status: Optional[EventStatus] = None,
        limit: Optional[int] = None,
    ) -> List[IngestedEvent]:
        """Newest first."""
        params: Dict[str, Any] = {}
        values: Dict[str, Any] = {":account": account_id}
        if status:
            params["filter_expression"] = "#status = :status"
            params["expression_attribute_names"] = {"#status": "status"}
            values[":status"] = status.value

        items = await self.dynamodb.query_items(
            self.table_name,
            "account_id = :account",
            expression_attribute_values=values,
            index_name=ACCOUNT_INDEX,
            scan_index_forward=False,
            limit=limit,
            **params,
        )
        return [self._from_item(item) for item in items]

    async def list_feed(self, account_id: str, limit: int = 50) -> List[IngestedEvent]:
        """Recent events for an account with duplicate deliveries merged."""
        events = await self.list_for_account(account_id)
        return merge_event_feed(events)[:limit]

    @staticmethod
    def _from_item(item: Dict[str, Any]) -> IngestedEvent:
        return IngestedEvent.model_validate({k: v for k, v in item.items() if v is not None})
