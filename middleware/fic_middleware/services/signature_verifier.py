"""
Webhook Signature Verifier

Verifies the ES256-signed JWT that Fatture in Cloud sends in the
Authorization header of every webhook delivery. Each way a token can fail
is reported as its own exception type.
"""

import base64
import binascii
import time
from typing import Any, Callable, Dict, List, Optional, Union

from jose import jwk, jwt
from jose.exceptions import JWKError, JWTError
from pydantic import BaseModel, ConfigDict, ValidationError

from fic_middleware.utils.exceptions import (
    ClaimMismatchException,
    ConfigurationException,
    IssuerMismatchException,
    MalformedTokenException,
    SignatureInvalidException,
    TokenExpiredException,
    TokenNotYetValidException,
)
from fic_middleware.utils.logging_config import get_logger

logger = get_logger(__name__)

ALGORITHM = "ES256"

# Time and audience checks are done below so they raise distinct errors
_DECODE_OPTIONS = {
    "verify_signature": True,
    "verify_aud": False,
    "verify_iat": False,
    "verify_exp": False,
    "verify_nbf": False,
    "verify_iss": False,
    "verify_sub": False,
    "verify_jti": False,
    "verify_at_hash": False,
}


class VerifiedClaims(BaseModel):
    """Claims of a token whose signature, issuer and time window checked out"""

    model_config = ConfigDict(extra="allow")

    iss: str
    jti: Optional[str] = None
    sub: Optional[str] = None
    aud: Optional[Union[str, List[str]]] = None
    iat: Optional[float] = None
    exp: Optional[float] = None
    nbf: Optional[float] = None


def _numeric_claim(claims: Dict[str, Any], name: str) -> Optional[float]:
    value = claims.get(name)
    if value is None:
        return None
    # bool is an int subclass but never a timestamp
    if isinstance(value, bool):
        raise MalformedTokenException(f"JWT {name} claim must be a number")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise MalformedTokenException(f"JWT {name} claim must be a number")


class WebhookSignatureVerifier:
    """ES256 verifier bound to one public key and one expected issuer"""

    def __init__(
        self,
        public_key_pem: Optional[str],
        issuer: str,
        leeway: int = 0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.issuer = issuer
        self.leeway = leeway
        self.clock = clock or time.time
        self.public_key_pem = public_key_pem

        if public_key_pem:
            try:
                jwk.construct(public_key_pem, ALGORITHM)
            except (JWKError, ValueError) as e:
                raise ConfigurationException(f"Invalid webhook public key: {e}")

    @classmethod
    def from_base64(
        cls,
        encoded_key: Optional[str],
        issuer: str,
        leeway: int = 0,
        clock: Optional[Callable[[], float]] = None,
    ) -> "WebhookSignatureVerifier":
        """Build a verifier from the base64-encoded PEM kept in configuration."""
        pem = None
        if encoded_key:
            try:
                pem = base64.b64decode(encoded_key, validate=True).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError) as e:
                raise ConfigurationException(f"Webhook public key is not valid base64 PEM: {e}")
        return cls(pem, issuer=issuer, leeway=leeway, clock=clock)

    @property
    def is_configured(self) -> bool:
        return bool(self.public_key_pem)

    def verify(
        self,
        token: str,
        expected_jti: Optional[str] = None,
        expected_subject: Optional[str] = None,
    ) -> VerifiedClaims:
        """
        Verify ``token`` and return its claims.

        Args:
            token: Compact JWS taken from the Bearer header
            expected_jti: CloudEvents id the token must be bound to, if known
            expected_subject: CloudEvents subject the token must be bound to, if known

        Raises:
            ConfigurationException: No public key configured
            MalformedTokenException: Not a decodable JWT
            SignatureInvalidException: Bad signature or disallowed algorithm
            TokenExpiredException / TokenNotYetValidException: Outside its time window
            IssuerMismatchException: ``iss`` is not the provider
            ClaimMismatchException: ``jti``/``sub`` do not match the delivery
        """
        if not self.public_key_pem:
            raise ConfigurationException("Webhook public key is not configured")

        try:
            jwt.get_unverified_header(token)
            jwt.get_unverified_claims(token)
        except JWTError as e:
            raise MalformedTokenException(f"Malformed JWT: {e}")

        try:
            claims: Dict[str, Any] = jwt.decode(
                token,
                self.public_key_pem,
                algorithms=[ALGORITHM],
                options=_DECODE_OPTIONS,
            )
        except JWTError as e:
            raise SignatureInvalidException(f"JWT signature verification failed: {e}")

        now = self.clock()

        exp = _numeric_claim(claims, "exp")
        if exp is not None and now >= exp + self.leeway:
            raise TokenExpiredException("JWT has expired", details={"exp": exp})

        nbf = _numeric_claim(claims, "nbf")
        if nbf is not None and now < nbf - self.leeway:
            raise TokenNotYetValidException("JWT is not yet valid", details={"nbf": nbf})

        if claims.get("iss") != self.issuer:
            raise IssuerMismatchException(
                "JWT issuer mismatch",
                details={"expected": self.issuer, "actual": claims.get("iss")},
            )

        if expected_jti is not None and claims.get("jti") != expected_jti:
            raise ClaimMismatchException("JWT jti does not match the event id", details={"claim": "jti"})

        if expected_subject is not None and claims.get("sub") != expected_subject:
            raise ClaimMismatchException(
                "JWT subject does not match the event subject", details={"claim": "sub"}
            )

        try:
            return VerifiedClaims.model_validate(claims)
        except ValidationError as e:
            raise MalformedTokenException(f"Malformed JWT claims: {e.error_count()} invalid")
