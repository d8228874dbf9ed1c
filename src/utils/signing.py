"""
Request signing for the TikTok Shop Open API.

sign = hex(HMAC-SHA256(app_secret, app_secret + path + sorted params + body + app_secret))
"""

import hashlib
import hmac
from collections.abc import Mapping
from typing import Any

# Never part of the signed parameter set
EXCLUDED_PARAMS = frozenset({"sign", "access_token"})


def canonical_params(query_params: Mapping[str, Any]) -> str:
    """Concatenate key+value pairs sorted by key, skipping excluded params."""
    return "".join(
        f"{key}{query_params[key]}"
        for key in sorted(query_params)
        if key not in EXCLUDED_PARAMS
    )


def sign(
    path: str,
    query_params: Mapping[str, Any],
    body: str | None = None,
    *,
    secret: str,
) -> str:
    """
    Compute the request signature expected by TikTok Shop.

    Args:
        path: Request path, e.g. "/order/202309/orders/search"
        query_params: Query parameters that will be sent with the request
        body: Raw JSON body string exactly as sent, if any
        secret: Application secret

    Returns:
        Lowercase hex digest
    """
    if not secret:
        raise ValueError("App secret is required to sign requests")

    base_string = f"{secret}{path}{canonical_params(query_params)}{body or ''}{secret}"
    return hmac.new(secret.encode("utf-8"), base_string.encode("utf-8"), hashlib.sha256).hexdigest()
