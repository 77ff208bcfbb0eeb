import secrets
from typing import Optional

from fastapi import Depends, Header
from fastapi.security import APIKeyHeader

from ..core.config import settings
from ..core.errors import AuthenticationError, AuthorizationError

operator_key_header = APIKeyHeader(name="X-Operator-Key", scheme_name="OperatorKey", auto_error=False)


async def get_current_account_id(
    x_account_id: Optional[str] = Header(None, alias="X-Account-Id")
) -> str:
    """Account id asserted by the upstream identity provider.

    Raises:
        AuthenticationError: If the gateway did not forward an identity
    """
    if not x_account_id or not x_account_id.strip():
        raise AuthenticationError("Missing X-Account-Id header")
    return x_account_id.strip()


async def require_operator(api_key: Optional[str] = Depends(operator_key_header)) -> str:
    """Guard for operator (admin and sale feed) endpoints."""
    if not api_key:
        raise AuthenticationError("Missing operator key")
    if not secrets.compare_digest(api_key, settings.operator_api_key):
        raise AuthorizationError("Invalid operator key")
    return api_key
