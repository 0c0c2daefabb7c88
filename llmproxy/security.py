"""Gateway credential checks."""

import hmac
import logging
from typing import Optional

logger = logging.getLogger(__name__)


class APIKeyValidator:
    """Compares presented bearer tokens against the configured secret in constant time."""

    requires_key = True

    def __init__(self, secret: str):
        if not secret:
            raise ValueError("APIKeyValidator needs a non-empty secret; use AllowAllValidator for open access")
        self._secret = secret.encode("utf-8")

    def validate(self, candidate: Optional[str]) -> bool:
        if not candidate:
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self._secret)


class AllowAllValidator:
    """Open access, for purely local providers with no secret configured."""

    requires_key = False

    def validate(self, candidate: Optional[str]) -> bool:
        return True


def build_key_validator(secret: Optional[str], allow_anonymous: bool = False):
    """
    Build the validator for a backend.

    A configured secret always wins. Without one, anonymous access has to be
    requested explicitly; an empty secret never silently matches an empty token.
    """
    if secret:
        return APIKeyValidator(secret)
    if allow_anonymous:
        logger.warning("No API key configured, gateway accepts unauthenticated requests")
        return AllowAllValidator()
    raise ValueError("an API key is required for this backend")
