"""
Fixed Window Rate Limiter Service

Distributed per-client rate limiting for the public webhook endpoint,
backed by DynamoDB atomic counters so concurrent Lambda invocations share
one budget.

Algorithm:
- Time is cut into windows of ``window_seconds``
- Each (scope, client, window) gets one counter item, incremented atomically
- A request is allowed while the counter stays within ``limit``
- Counter items carry a TTL so DynamoDB cleans them up
"""

import math
import time
from typing import Any, Callable, Dict, Optional

from botocore.exceptions import ClientError

from fic_middleware.services.dynamodb_service import DynamoDBService
from fic_middleware.utils.exceptions import RateLimitException
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)


class FixedWindowRateLimiter:
    """
    Per-key fixed window limiter.

    DynamoDB Table Structure:
        Primary Key: pk (String) - "{scope}#{key}#{window_index}"
        Attributes:
            - count: calls seen in the window
            - ttl: Unix timestamp for automatic cleanup
    """

    def __init__(
        self,
        dynamodb_service: DynamoDBService,
        table_name: str,
        scope: str = "fic-webhook",
        limit: int = 1,
        window_seconds: int = 1,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.dynamodb = dynamodb_service
        self.table_name = table_name
        self.scope = scope
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock or time.time

    async def check(self, key: str) -> Dict[str, Any]:
        """
        Count this call against ``key`` and report whether it is allowed.

        Fails open: if the counter store is unavailable the call is allowed
        and the error is logged.

        Example:
            >>> await limiter.check("203.0.113.9")
            {'allowed': True, 'count': 1, 'limit': 1, 'retry_after': 0}
        """
        now = self.clock()
        window_index = int(now // self.window_seconds)
        window_end = (window_index + 1) * self.window_seconds

        try:
            count = await self.dynamodb.increment(
                self.table_name,
                {"pk": f"{self.scope}#{key}#{window_index}"},
                ttl_epoch=int(window_end) + 60,
            )
        except ClientError as e:
            logger.error(
                f"Rate limit counter unavailable, allowing request: {e}",
                extra={"scope": self.scope, "error": str(e)},
            )
            return {"allowed": True, "count": 0, "limit": self.limit, "retry_after": 0}

        allowed = count <= self.limit
        retry_after = 0 if allowed else max(1, math.ceil(window_end - now))

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                extra={"scope": self.scope, "client": key, "count": count, "limit": self.limit},
            )

        return {"allowed": allowed, "count": count, "limit": self.limit, "retry_after": retry_after}

    async def enforce(self, key: str) -> None:
        """
        Raises:
            RateLimitException: If ``key`` exhausted its budget for the window
        """
        result = await self.check(key)
        if not result["allowed"]:
            raise RateLimitException(
                "Too many requests",
                retry_after=result["retry_after"],
                details={"scope": self.scope},
            )
