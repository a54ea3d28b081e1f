from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from leadledger.core.config import get_settings
from leadledger.errors import UnauthenticatedError
from leadledger.platform.security.context import Role

_KNOWN_ROLES = {role.value for role in Role}


@dataclass
class AuthUser:
    sub: str
    role: str
    name: str | None = None


def _bearer_token(request: Request) -> str:
    auth_header = request.headers.get("authorization", "")
    scheme, _, token = auth_header.partition(" ")
    if scheme.lower() != "bearer":
        return ""
    return token.strip()


async def get_current_user(request: Request) -> AuthUser:
    token = _bearer_token(request)
    if not token:
        raise UnauthenticatedError("missing bearer token")

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise UnauthenticatedError("invalid or expired token") from exc

    subject = payload.get("sub")
    if not subject:
        raise UnauthenticatedError("token has no subject")

    role = str(payload.get("role", "")).lower()
    if role not in _KNOWN_ROLES:
        raise UnauthenticatedError("token carries an unknown role")

    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = str(subject)
    name = payload.get("name")
    return AuthUser(sub=str(subject), role=role, name=str(name) if name else None)


def issue_token(subject: str, role: str, name: str | None = None) -> str:
    """Sign a token the way the upstream identity provider does. Used by tooling and tests."""

    settings = get_settings()
    claims: dict[str, str] = {"sub": subject, "role": role}
    if name:
        claims["name"] = name
    return jwt.encode(claims, settings.jwt_secret, algorithm=settings.jwt_algorithm)
