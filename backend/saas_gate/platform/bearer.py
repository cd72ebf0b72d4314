"""Authorization header parsing shared by auth and rate limiting."""

from typing import Optional


def extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    """
    Pull the token out of an Authorization header value.

    Accepts ``Bearer <token>`` and a bare token. Other schemes yield None.
    """
    if not authorization:
        return None
    value = authorization.strip()
    scheme, _, credentials = value.partition(" ")
    if credentials:
        if scheme.lower() != "bearer":
            return None
        return credentials.strip() or None
    if value.lower() == "bearer":
        return None
    return value or None
