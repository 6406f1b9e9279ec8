"""
API key check for the routes that change the machine (check, install,
cancel, remove). Reads stay open so a front-end can always show state.
Dormant unless REQUIRE_AUTH is set.
"""

import hmac
import logging
from typing import Optional

from fastapi import Security
from fastapi.security import APIKeyHeader

from provisioner.config import settings
from provisioner.core.exceptions import ApiKeyError

logger = logging.getLogger(__name__)

API_KEY_HEADER = APIKeyHeader(name="X-API-Key", auto_error=False)


def is_allowed_key(api_key: str) -> bool:
    return any(hmac.compare_digest(api_key, allowed) for allowed in settings.ALLOWED_API_KEYS)


async def maybe_require_api_key(api_key: Optional[str] = Security(API_KEY_HEADER)) -> Optional[str]:
    """
    Raises:
        ApiKeyError: 401 when the header is absent, 403 when the key is unknown
    """
    if not settings.REQUIRE_AUTH:
        return None

    if not api_key:
        logger.warning("🔒 Mutating request without X-API-Key")
        raise ApiKeyError("API key required. Include 'X-API-Key' header.", missing=True)

    if not is_allowed_key(api_key):
        logger.warning(f"🔒 Unknown API key: {api_key[:4]}...")
        raise ApiKeyError("Invalid API key", missing=False)

    return api_key
