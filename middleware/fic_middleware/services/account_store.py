"""
Account Store

Connected Fatture in Cloud accounts and their OAuth credentials. Acts as the
credential provider for the API client callers: it hands out the current
access token or signals that the account needs to be re-authorized.
"""

from typing import List, Optional

from fic_middleware.models.records import AccountStatus, ProviderAccount, utcnow
from fic_middleware.services.dynamodb_service import DynamoDBService
from fic_middleware.utils.exceptions import CredentialsUnavailableException
from fic_middleware.utils.logging_config import get_logger, mask_secret

logger = get_logger(__name__)


class AccountStore:
    def __init__(self, dynamodb_service: DynamoDBService, table_name: str):
        self.dynamodb = dynamodb_service
        self.table_name = table_name

    async def get(self, account_id: str) -> Optional[ProviderAccount]:
        item = await self.dynamodb.get_item(self.table_name, {"account_id": account_id})
        if not item:
            return None
        return ProviderAccount.model_validate({k: v for k, v in item.items() if v is not None})

    async def save(self, account: ProviderAccount) -> ProviderAccount:
        account.updated_at = utcnow()
        await self.dynamodb.put_item(self.table_name, account.model_dump(mode="json"))
        return account

    async def list_accounts(self) -> List[ProviderAccount]:
        items = await self.dynamodb.scan_items(self.table_name)
        return [
            ProviderAccount.model_validate({k: v for k, v in item.items() if v is not None})
            for item in items
        ]

    async def get_credentials(self, account_id: str) -> ProviderAccount:
        """
        Return the account if it holds a usable access token.

        Raises:
            CredentialsUnavailableException: Unknown account, no token, or the
                account is waiting for re-authorization
        """
        account = await self.get(account_id)
        if account is None:
            raise CredentialsUnavailableException(account_id, f"Unknown account {account_id}")
        if not account.access_token:
            raise CredentialsUnavailableException(account_id)
        if account.status == AccountStatus.NEEDS_REFRESH:
            raise CredentialsUnavailableException(
                account_id, f"Account {account_id} needs re-authorization"
            )
        logger.debug(
            "Credentials loaded",
            extra={"account_id": account_id, "access_token": mask_secret(account.access_token)},
        )
        return account

    async def mark_needs_refresh(
        self, account_id: str, note: str = "Access token expired or invalid"
    ) -> None:
        await self.dynamodb.update_item(
            self.table_name,
            {"account_id": account_id},
            "SET #status = :status, status_note = :note, updated_at = :now",
            expression_attribute_names={"#status": "status"},
            expression_attribute_values={
                ":status": AccountStatus.NEEDS_REFRESH.value,
                ":note": note,
                ":now": utcnow().isoformat(),
            },
            condition_expression="attribute_exists(account_id)",
        )
        logger.warning(
            "Account marked as needing token refresh",
            extra={"account_id": account_id, "status_note": note},
        )
