"""
DynamoDB Service

Thin async-facing wrapper over the boto3 DynamoDB resource used by every
store in the middleware:
- conditional create-if-absent writes
- update expressions with optional conditions
- atomic counters for rate limiting
- paginated query/scan
"""

import json
from decimal import Decimal
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from fic_middleware.config import settings
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)


def to_dynamodb_item(data: Dict[str, Any]) -> Dict[str, Any]:
    """DynamoDB rejects floats; route JSON-compatible data through Decimal."""
    return json.loads(json.dumps(data), parse_float=Decimal)


def from_dynamodb_item(value: Any) -> Any:
    """Convert Decimals returned by boto3 back to int/float, recursively."""
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, dict):
        return {k: from_dynamodb_item(v) for k, v in value.items()}
    if isinstance(value, list):
        return [from_dynamodb_item(v) for v in value]
    return value


def _is_conditional_failure(error: ClientError) -> bool:
    return error.response.get("Error", {}).get("Code") == "ConditionalCheckFailedException"


class DynamoDBService:
    """
    DynamoDB access for all middleware tables.

    Each store owns its table name and key layout; this service only knows
    how to talk to DynamoDB.
    """

    def __init__(
        self,
        region_name: Optional[str] = None,
        endpoint_url: Optional[str] = None,
    ):
        self.region_name = region_name or settings.aws_region
        # Only use endpoint_url for local development (LocalStack), not in Lambda
        self.endpoint_url = endpoint_url if endpoint_url is not None else (
            settings.aws_endpoint_url if not settings.is_lambda else None
        )
        self.client = None
        self._connected = False

    async def connect(self):
        """Initialize DynamoDB connection"""
        if self._connected:
            return

        try:
            self.client = boto3.resource(
                "dynamodb",
                region_name=self.region_name,
                endpoint_url=self.endpoint_url,
            )
            self._connected = True
            logger.info("Connected to DynamoDB", extra={"region": self.region_name})

        except ClientError as e:
            logger.error(f"Failed to connect to DynamoDB: {e}")
            raise

    async def disconnect(self):
        """Close DynamoDB connection"""
        if self.client:
            # boto3 resource doesn't need explicit close
            self._connected = False
            logger.info("DynamoDB connection closed")

    def is_connected(self) -> bool:
        return self._connected

    async def table(self, table_name: str):
        if not self._connected:
            await self.connect()
        return self.client.Table(table_name)

    async def describe_table(self, table_name: str) -> Dict[str, Any]:
        """Load table metadata; raises ClientError if the table is missing"""
        table = await self.table(table_name)
        table.load()
        return {"table_name": table_name, "table_status": table.table_status, "item_count": table.item_count}

    async def get_item(self, table_name: str, key: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """
        Get an item from DynamoDB table by primary key.

        Args:
            table_name: Name of the DynamoDB table
            key: Primary key dict (e.g., {"pk": "value"} or {"pk": "value", "sk": "value"})

        Returns:
            Item dict if found, None otherwise
        """
        table = await self.table(table_name)

        try:
            response = table.get_item(Key=key, ConsistentRead=True)
            item = response.get("Item")
            return from_dynamodb_item(item) if item else None

        except ClientError as e:
            logger.error(f"Failed to get item from {table_name}: {e}", extra={"key": key})
            raise

    async def put_item(
        self,
        table_name: str,
        item: Dict[str, Any],
        condition_expression: Optional[str] = None,
        expression_attribute_names: Optional[Dict[str, str]] = None,
        expression_attribute_values: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Put an item into DynamoDB table.

        Returns:
            True if stored, False if the condition expression rejected the write
        """
        table = await self.table(table_name)

        params: Dict[str, Any] = {"Item": to_dynamodb_item(item)}
        if condition_expression:
            params["ConditionExpression"] = condition_expression
        if expression_attribute_names:
            params["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            params["ExpressionAttributeValues"] = to_dynamodb_item(expression_attribute_values)

        try:
            table.put_item(**params)
            logger.debug(f"Item stored in {table_name}")
            return True

        except ClientError as e:
            if _is_conditional_failure(e):
                logger.debug(f"Conditional put rejected in {table_name}")
                return False
            logger.error(f"Failed to put item in {table_name}: {e}")
            raise

    async def update_item(
        self,
        table_name: str,
        key: Dict[str, Any],
        update_expression: str,
        expression_attribute_names: Optional[Dict[str, str]] = None,
        expression_attribute_values: Optional[Dict[str, Any]] = None,
        condition_expression: Optional[str] = None,
    ) -> Optional[Dict[str, Any]]:
        """
        Apply an update expression, creating the item if it does not exist.

        Returns:
            The item after the update, or None if the condition rejected it
        """
        table = await self.table(table_name)

        params: Dict[str, Any] = {
            "Key": key,
            "UpdateExpression": update_expression,
            "ReturnValues": "ALL_NEW",
        }
        if expression_attribute_names:
            params["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            params["ExpressionAttributeValues"] = to_dynamodb_item(expression_attribute_values)
        if condition_expression:
            params["ConditionExpression"] = condition_expression

        try:
            response = table.update_item(**params)
            return from_dynamodb_item(response.get("Attributes", {}))

        except ClientError as e:
            if _is_conditional_failure(e):
                logger.debug(f"Conditional update rejected in {table_name}", extra={"key": key})
                return None
            logger.error(f"Failed to update item in {table_name}: {e}", extra={"key": key})
            raise

    async def delete_item(self, table_name: str, key: Dict[str, Any]) -> bool:
        """
        Delete an item from DynamoDB table by primary key.

        Returns:
            True if an item was removed
        """
        table = await self.table(table_name)

        try:
            response = table.delete_item(Key=key, ReturnValues="ALL_OLD")
            deleted = "Attributes" in response
            logger.debug(f"Item deleted from {table_name}", extra={"key": key, "deleted": deleted})
            return deleted

        except ClientError as e:
            logger.error(f"Failed to delete item from {table_name}: {e}")
            raise

    async def increment(
        self,
        table_name: str,
        key: Dict[str, Any],
        amount: int = 1,
        ttl_epoch: Optional[int] = None,
    ) -> int:
        """
        Increment a counter (atomic operation).

        Args:
            table_name: Counter table
            key: Primary key of the counter item
            amount: Amount to increment by
            ttl_epoch: Epoch seconds after which DynamoDB may expire the item

        Returns:
            New counter value
        """
        update_expr = "ADD #count :inc"
        names = {"#count": "count"}
        values: Dict[str, Any] = {":inc": amount}

        if ttl_epoch:
            update_expr += " SET #ttl = :ttl"
            names["#ttl"] = "ttl"
            values[":ttl"] = ttl_epoch

        attributes = await self.update_item(
            table_name,
            key,
            update_expr,
            expression_attribute_names=names,
            expression_attribute_values=values,
        )
        return int(attributes["count"])

    async def query_items(
        self,
        table_name: str,
        key_condition_expression: str,
        expression_attribute_names: Optional[Dict[str, str]] = None,
        expression_attribute_values: Optional[Dict[str, Any]] = None,
        filter_expression: Optional[str] = None,
        index_name: Optional[str] = None,
        scan_index_forward: bool = True,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        """
        Query items by partition key, following pagination.

        Example:
            >>> await dynamodb.query_items(
            ...     table_name="fic-subscriptions",
            ...     key_condition_expression="account_id = :account",
            ...     expression_attribute_values={":account": "42"},
            ... )
        """
        table = await self.table(table_name)

        params: Dict[str, Any] = {
            "KeyConditionExpression": key_condition_expression,
            "ScanIndexForward": scan_index_forward,
        }
        if expression_attribute_names:
            params["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            params["ExpressionAttributeValues"] = to_dynamodb_item(expression_attribute_values)
        if filter_expression:
            params["FilterExpression"] = filter_expression
        if index_name:
            params["IndexName"] = index_name

        return await self._paginate(table.query, params, limit, table_name)

    async def scan_items(
        self,
        table_name: str,
        filter_expression: Optional[str] = None,
        expression_attribute_names: Optional[Dict[str, str]] = None,
        expression_attribute_values: Optional[Dict[str, Any]] = None,
    ) -> List[Dict[str, Any]]:
        """Scan a whole table, optionally filtered, following pagination."""
        table = await self.table(table_name)

        params: Dict[str, Any] = {}
        if filter_expression:
            params["FilterExpression"] = filter_expression
        if expression_attribute_names:
            params["ExpressionAttributeNames"] = expression_attribute_names
        if expression_attribute_values:
            params["ExpressionAttributeValues"] = to_dynamodb_item(expression_attribute_values)

        return await self._paginate(table.scan, params, None, table_name)

    async def _paginate(
        self,
        operation,
        params: Dict[str, Any],
        limit: Optional[int],
        table_name: str,
    ) -> List[Dict[str, Any]]:
        items: List[Dict[str, Any]] = []

        try:
            while True:
                response = operation(**params)
                items.extend(from_dynamodb_item(item) for item in response.get("Items", []))

                last_key = response.get("LastEvaluatedKey")
                if not last_key or (limit and len(items) >= limit):
                    break
                params["ExclusiveStartKey"] = last_key

        except ClientError as e:
            logger.error(f"Failed to read items from {table_name}: {e}")
            raise

        return items[:limit] if limit else items
