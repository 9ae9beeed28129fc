"""
Application Configuration Management

Loads configuration from environment variables and AWS Secrets Manager.
Auto-detects the AWS Lambda runtime, where the webhook public key is
fetched by ARN before settings are built.
"""

import os
from functools import lru_cache
from typing import List, Optional

import boto3
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

FIC_API_BASE_URL = "https://api-v2.fattureincloud.it"


class Settings(BaseSettings):
    """Application settings with validation"""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development", description="Environment name")

    # Application
    app_name: str = Field(default="Fatture in Cloud Webhook Middleware")
    app_version: str = Field(default="1.0.0")
    log_level: str = Field(default="INFO")

    # FastAPI
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000)

    # Fatture in Cloud API
    fic_api_base_url: str = Field(default=FIC_API_BASE_URL)
    fic_api_timeout: float = Field(default=30.0, description="Upstream request timeout in seconds")

    # Webhook verification
    fic_webhook_verify_jwt: bool = Field(default=True)
    fic_webhook_public_key: Optional[str] = Field(
        default=None, description="Base64-encoded PEM public key used to verify webhook JWTs"
    )
    fic_webhook_issuer: str = Field(default=FIC_API_BASE_URL)
    fic_webhook_jwt_leeway: int = Field(default=0, description="Clock skew tolerance in seconds")
    webhook_challenge_header: str = Field(default="x-fic-verification-challenge")

    # Public base URL the provider delivers to, e.g. https://hooks.example.com
    webhook_base_url: str = Field(default="http://localhost:8000")

    # Inbound rate limiting (per client IP)
    webhook_rate_limit: int = Field(default=1, description="Requests allowed per window")
    webhook_rate_limit_window: int = Field(default=1, description="Window length in seconds")
    # Only behind a proxy that appends the caller address to X-Forwarded-For
    trust_forwarded_for: bool = Field(default=False, description="Use X-Forwarded-For for the client IP")

    # AWS
    aws_region: str = Field(default="eu-south-1")
    aws_access_key_id: Optional[str] = Field(default=None)
    aws_secret_access_key: Optional[str] = Field(default=None)
    aws_endpoint_url: Optional[str] = Field(default=None)

    # SQS
    sqs_queue_url: str = Field(description="SQS queue URL for webhook jobs")
    sqs_max_messages: int = Field(default=10)
    sqs_wait_time_seconds: int = Field(default=20)
    # Must exceed the worst-case job duration (attempts * timeout + backoffs)
    sqs_visibility_timeout: int = Field(default=600)

    # DynamoDB
    dynamodb_accounts_table: str = Field(default="fic-accounts")
    dynamodb_subscriptions_table: str = Field(default="fic-subscriptions")
    dynamodb_events_table: str = Field(default="fic-events")
    dynamodb_resources_table: str = Field(default="fic-resources")
    dynamodb_rate_limit_table: str = Field(default="fic-rate-limits")

    # Job processing
    job_max_attempts: int = Field(default=3)
    job_backoff_seconds: int = Field(default=60)
    job_timeout_seconds: int = Field(default=120)

    # Subscription lifecycle
    subscription_renewal_days: int = Field(default=15)

    # Management API; leave unset to disable the subscription endpoints
    admin_api_key: Optional[str] = Field(default=None)

    # CORS
    cors_origins: List[str] = Field(default=["http://localhost:3000"])
    cors_allow_credentials: bool = Field(default=True)
    cors_allow_methods: List[str] = Field(default=["GET", "POST"])
    cors_allow_headers: List[str] = Field(default=["*"])

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level"""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"Log level must be one of {valid_levels}")
        return v_upper

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment"""
        valid_envs = ["development", "staging", "production"]
        v_lower = v.lower()
        if v_lower not in valid_envs:
            raise ValueError(f"Environment must be one of {valid_envs}")
        return v_lower

    @field_validator("webhook_base_url", "fic_api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @property
    def is_production(self) -> bool:
        """Check if running in production"""
        return self.environment == "production"

    @property
    def is_development(self) -> bool:
        """Check if running in development"""
        return self.environment == "development"

    @property
    def is_lambda(self) -> bool:
        """Check if running in AWS Lambda environment"""
        return bool(os.getenv("AWS_LAMBDA_FUNCTION_NAME"))

    def validate_required_secrets(self) -> None:
        """
        Validate that required secrets are present.
        Raises ValueError if any required secrets are missing.
        """
        missing = []

        if self.is_production and self.fic_webhook_verify_jwt and not self.fic_webhook_public_key:
            missing.append("fic_webhook_public_key")

        if missing:
            raise ValueError(
                f"Missing required configuration: {', '.join(missing)}. "
                f"In Lambda, ensure ARN environment variables are set. "
                f"Locally, ensure .env file or environment variables are configured."
            )


def _fetch_secret_by_arn(arn: str, region: str) -> str:
    """
    Fetch a secret value from AWS Secrets Manager using ARN.

    Args:
        arn: The ARN of the secret
        region: AWS region

    Returns:
        The secret value as a string
    """
    try:
        client = boto3.client("secretsmanager", region_name=region)
        response = client.get_secret_value(SecretId=arn)
        return response.get("SecretString", "")
    except Exception as e:
        raise RuntimeError(f"Failed to retrieve secret from ARN {arn}: {e}")


@lru_cache()
def get_settings() -> Settings:
    """
    Get application settings (cached).

    In Lambda, the webhook public key is fetched from Secrets Manager using
    FIC_WEBHOOK_PUBLIC_KEY_ARN when it is not already in the environment.
    """
    is_lambda = bool(os.getenv("AWS_LAMBDA_FUNCTION_NAME"))
    public_key_arn = os.getenv("FIC_WEBHOOK_PUBLIC_KEY_ARN")

    if is_lambda and public_key_arn and not os.getenv("FIC_WEBHOOK_PUBLIC_KEY"):
        region = os.getenv("AWS_REGION", "eu-south-1")
        try:
            os.environ["FIC_WEBHOOK_PUBLIC_KEY"] = _fetch_secret_by_arn(public_key_arn, region)
        except RuntimeError as e:
            # Settings validation reports the missing key
            print(f"Error loading secrets from Secrets Manager: {e}")

    settings = Settings()
    settings.validate_required_secrets()

    return settings


# Export singleton instance
settings = get_settings()
