"""Bearer-token helpers shared by the API dependencies and request logging."""
import os

from jose import JWTError, jwt


def extract_bearer_token(authorization: str | None) -> str | None:
    if not authorization:
        return None
    parts = authorization.split(" ", 1)
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1].strip()
    return None


def _jwt_secret() -> str | None:
    secret = os.getenv("JWT_SECRET")
    if secret:
        return secret
    return None


def _jwt_algorithm() -> str:
    return os.getenv("JWT_ALGORITHM", "HS256")


def decode_subject(token: str | None) -> str | None:
    """Return the ``sub`` claim of a valid access token, else None."""
    if not token:
        return None
    secret = _jwt_secret()
    if not secret:
        return None
    try:
        payload = jwt.decode(token, secret, algorithms=[_jwt_algorithm()])
    except JWTError:
        return None
    subject = payload.get("sub")
    if subject:
        return str(subject)
    return None
