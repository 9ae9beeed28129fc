"""
Resource Store

Local copy of Fatture in Cloud resources, upserted by natural key
(account, resource type, provider id) so replayed jobs converge.

DynamoDB Table Structure:
    Partition Key: resource_key (String) - "{account_id}#{resource_type}"
    Sort Key: fic_id (Number)
"""

from typing import Any, Dict, Optional

from fic_middleware.models.records import utcnow
from fic_middleware.models.resources import ResourceType, normalize_resource
from fic_middleware.services.dynamodb_service import DynamoDBService
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)


def resource_key(account_id: str, resource_type: ResourceType) -> str:
    return f"{account_id}#{resource_type.value}"


class ResourceStore:
    def __init__(self, dynamodb_service: DynamoDBService, table_name: str):
        self.dynamodb = dynamodb_service
        self.table_name = table_name

    async def upsert(
        self, account_id: str, resource_type: ResourceType, data: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Store the normalized resource, replacing any earlier copy."""
        record = normalize_resource(resource_type, data)
        now = utcnow().isoformat()

        item = {
            "resource_key": resource_key(account_id, resource_type),
            "account_id": account_id,
            "resource_type": resource_type.value,
            **record.model_dump(mode="json"),
            "synced_at": now,
        }
        await self.dynamodb.put_item(self.table_name, item)

        logger.debug(
            "Resource upserted",
            extra={"account_id": account_id, "resource_type": resource_type.value, "fic_id": record.fic_id},
        )
        return item

    async def get(
        self, account_id: str, resource_type: ResourceType, fic_id: int
    ) -> Optional[Dict[str, Any]]:
        return await self.dynamodb.get_item(
            self.table_name,
            {"resource_key": resource_key(account_id, resource_type), "fic_id": fic_id},
        )

    async def delete(self, account_id: str, resource_type: ResourceType, fic_id: int) -> bool:
        return await self.dynamodb.delete_item(
            self.table_name,
            {"resource_key": resource_key(account_id, resource_type), "fic_id": fic_id},
        )
