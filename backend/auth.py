from datetime import timedelta
from functools import wraps
from typing import Dict, Optional

from flask import current_app, g, request
from flask_jwt_extended import (
    create_access_token,
    decode_token,
    set_access_cookies,
    unset_jwt_cookies,
)
from flask_jwt_extended.exceptions import JWTExtendedException
from jwt.exceptions import PyJWTError

from errors import Forbidden, InvalidToken, Unauthenticated, ValidationError
from stores import normalize_email

RESERVED_CLAIMS = {"sub", "exp", "iat", "nbf", "jti", "type", "fresh", "csrf"}


def issue_token(payload: Dict, expires_delta: Optional[timedelta] = None) -> str:
    """Sign an identity payload into a session token.

    The payload must carry an ``email``; it becomes the token subject. The
    remaining keys ride along as claims so ``verify_token`` can hand back the
    same identity. Keys that collide with registered JWT claims are dropped.
    """
    if not isinstance(payload, dict):
        raise ValidationError("A JSON identity payload is required.")

    email = normalize_email(payload.get("email"))
    if not email:
        raise ValidationError("An email is required to start a session.")

    claims = {
        key: value for key, value in payload.items() if key not in RESERVED_CLAIMS
    }
    claims["email"] = email

    token_options = {}
    if expires_delta is not None:
        token_options["expires_delta"] = expires_delta

    return create_access_token(identity=email, additional_claims=claims, **token_options)


def verify_token(token: str) -> Dict:
    try:
        claims = decode_token(token)
    except (JWTExtendedException, PyJWTError, ValueError) as exc:
        raise InvalidToken() from exc

    identity = {
        key: value for key, value in claims.items() if key not in RESERVED_CLAIMS
    }
    identity.setdefault("email", normalize_email(claims.get("sub")))
    return identity


def attach_session_cookie(response, token: str):
    set_access_cookies(response, token)
    return response


def clear_session_cookie(response):
    unset_jwt_cookies(response)
    return response


def authenticate() -> Dict:
    token = request.cookies.get(current_app.config["JWT_ACCESS_COOKIE_NAME"])
    if not token:
        raise Unauthenticated()
    g.identity = verify_token(token)
    return g.identity


def current_email() -> str:
    identity = getattr(g, "identity", None) or {}
    return normalize_email(identity.get("email"))


def token_required(view):
    @wraps(view)
    def wrapper(*args, **kwargs):
        authenticate()
        return view(*args, **kwargs)

    return wrapper


def admin_required(users):
    """Build a decorator that authenticates, then demands the admin role.

    ``users`` is the ``UserStore`` consulted for the caller's stored role.
    """

    def decorator(view):
        @wraps(view)
        def wrapper(*args, **kwargs):
            identity = authenticate()
            if users.get_role(identity.get("email")) != "admin":
                current_app.logger.warning(
                    "Rejected admin request from %s to %s",
                    identity.get("email"),
                    request.path,
                )
                raise Forbidden()
            return view(*args, **kwargs)

        return wrapper

    return decorator
