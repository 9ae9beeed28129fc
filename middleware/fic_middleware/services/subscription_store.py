"""
Subscription Store

Persistence and lookup rules for webhook subscriptions, one row per
(account, event group), plus the helpers that tie an event group to a sink
URL.

DynamoDB Table Structure:
    Partition Key: account_id (String)
    Sort Key: event_group (String)
    Attributes: external_id, secret, expires_at (ISO), expires_at_epoch,
    is_active, sink, types, created_at, updated_at
"""

import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fic_middleware.models.records import Subscription, utcnow
from fic_middleware.services.dynamodb_service import DynamoDBService
from fic_middleware.utils.exceptions import SinkEventGroupMismatchException, ValidationException
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

DEFAULT_EVENT_GROUP = "default"

# Known middle segments of an event type and the group they route to, in priority order
EVENT_GROUP_SEGMENTS = (
    ("entities", "entity"),
    ("issued_documents", "issued_documents"),
    ("received_documents", "received_documents"),
    ("products", "products"),
    ("receipts", "receipts"),
)


def infer_event_group(event_type: str) -> str:
    """
    Map an event type to its coarse routing group.

    Example:
        >>> infer_event_group("it.fattureincloud.webhooks.entities.clients.create")
        'entity'
    """
    if "." not in event_type:
        return event_type

    segments = event_type.split(".")
    for segment, group in EVENT_GROUP_SEGMENTS:
        if segment in segments:
            return group

    if "webhooks" in segments:
        position = segments.index("webhooks")
        if position + 1 < len(segments) and segments[position + 1]:
            return segments[position + 1]

    return DEFAULT_EVENT_GROUP


def webhook_path(account_id: str, event_group: str) -> str:
    return f"/webhooks/{account_id}/{event_group}"


def build_webhook_url(base_url: str, account_id: str, event_group: str) -> str:
    return f"{base_url.rstrip('/')}{webhook_path(account_id, event_group)}"


def extract_event_group_from_sink(sink: Optional[str], account_id: str) -> Optional[str]:
    """Read the event group out of a sink URL routed to ``account_id``."""
    if not sink:
        return None
    match = re.search(rf"/webhooks/{re.escape(str(account_id))}/([a-z_]+)(?:[/?#]|$)", sink)
    return match.group(1) if match else None


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class SubscriptionStore:
    """CRUD and lookup over the subscriptions table"""

    def __init__(self, dynamodb_service: DynamoDBService, table_name: str):
        self.dynamodb = dynamodb_service
        self.table_name = table_name

    infer_event_group = staticmethod(infer_event_group)

    async def get(self, account_id: str, event_group: str) -> Optional[Subscription]:
        item = await self.dynamodb.get_item(
            self.table_name, {"account_id": account_id, "event_group": event_group}
        )
        return self._from_item(item) if item else None

    async def find_active(self, account_id: str, event_group: str) -> Optional[Subscription]:
        subscription = await self.get(account_id, event_group)
        if subscription and subscription.is_active:
            return subscription
        return None

    async def upsert(
        self,
        account_id: str,
        event_group: str,
        external_id: Optional[str],
        secret: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
        sink: Optional[str] = None,
        types: Optional[List[str]] = None,
    ) -> Subscription:
        """
        Insert or update the single row for (account_id, event_group).

        The row is keyed by the pair itself, so repeated calls update it in
        place and there can never be two rows (active or not) for one pair.
        """
        now = utcnow()
        expires_at = _as_utc(expires_at)

        assignments = {
            "external_id": external_id,
            "secret": secret,
            "expires_at": expires_at.isoformat() if expires_at else None,
            "expires_at_epoch": int(expires_at.timestamp()) if expires_at else None,
            "is_active": is_active,
            "updated_at": now.isoformat(),
        }
        if sink is not None:
            assignments["sink"] = sink
        if types is not None:
            assignments["types"] = list(types)

        names = {f"#{field}": field for field in assignments}
        values: Dict[str, Any] = {f":{field}": value for field, value in assignments.items()}
        values[":created_at"] = now.isoformat()
        expression = "SET " + ", ".join(f"#{field} = :{field}" for field in assignments)
        expression += ", #created_at = if_not_exists(#created_at, :created_at)"
        names["#created_at"] = "created_at"

        item = await self.dynamodb.update_item(
            self.table_name,
            {"account_id": account_id, "event_group": event_group},
            expression,
            expression_attribute_names=names,
            expression_attribute_values=values,
        )

        logger.info(
            "Subscription stored",
            extra={
                "account_id": account_id,
                "event_group": event_group,
                "external_id": external_id,
                "is_active": is_active,
                "expires_at": assignments["expires_at"],
            },
        )

        return self._from_item(item)

    async def deactivate(self, account_id: str, event_group: str) -> Optional[Subscription]:
        item = await self.dynamodb.update_item(
            self.table_name,
            {"account_id": account_id, "event_group": event_group},
            "SET is_active = :inactive, updated_at = :now",
            expression_attribute_values={":inactive": False, ":now": utcnow().isoformat()},
            condition_expression="attribute_exists(account_id)",
        )
        return self._from_item(item) if item else None

    async def list_for_account(self, account_id: str) -> List[Subscription]:
        items = await self.dynamodb.query_items(
            self.table_name,
            "account_id = :account",
            expression_attribute_values={":account": account_id},
        )
        return [self._from_item(item) for item in items]

    async def find_expiring(self, cutoff: datetime) -> List[Subscription]:
        """Active subscriptions whose expiry is set and falls on or before ``cutoff``."""
        items = await self.dynamodb.scan_items(
            self.table_name,
            filter_expression="is_active = :active AND attribute_type(expires_at_epoch, :number) "
            "AND expires_at_epoch <= :cutoff",
            expression_attribute_values={
                ":active": True,
                ":number": "N",
                ":cutoff": int(_as_utc(cutoff).timestamp()),
            },
        )
        subscriptions = [self._from_item(item) for item in items]
        return sorted(subscriptions, key=lambda s: s.expires_at)

    @staticmethod
    def resolve_sink_group(
        sink: str,
        account_id: str,
        types: List[str],
        event_group: Optional[str] = None,
    ) -> str:
        """
        Validate a caller-supplied sink before registering it upstream.

        Returns the event group the subscription will be stored under.

        Raises:
            ValidationException: Non-https sink or no event types
            SinkEventGroupMismatchException: Sink does not route back to
                this account and event group
        """
        if not types:
            raise ValidationException("At least one event type is required")
        if not sink.lower().startswith("https://"):
            raise ValidationException("Sink must be an https URL", details={"sink": sink})

        group = event_group or infer_event_group(types[0])
        expected = webhook_path(account_id, group)
        if extract_event_group_from_sink(sink, account_id) != group:
            raise SinkEventGroupMismatchException(sink, expected)
        return group

    @staticmethod
    def _from_item(item: Dict[str, Any]) -> Subscription:
        values = {k: v for k, v in item.items() if k != "expires_at_epoch" and v is not None}
        return Subscription.model_validate(values)
