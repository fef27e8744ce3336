"""Security helpers: PIN hashing and actor permission checks."""

from __future__ import annotations

import hashlib
import hmac
from secrets import token_hex

from .exceptions import PermissionDeniedError, ValidationError
from .models import Actor, Role

PIN_ITERATIONS = 120_000


def hash_pin(pin: str, *, salt: str | None = None, iterations: int = PIN_ITERATIONS) -> str:
    """Return a ``pbkdf2_sha256$iterations$salt$digest`` string for ``pin``."""

    pin = (pin or "").strip()
    if not pin.isdigit() or not 4 <= len(pin) <= 8:
        raise ValidationError("PIN must be 4 to 8 digits.")
    salt = salt or token_hex(8)
    digest = hashlib.pbkdf2_hmac("sha256", pin.encode("utf-8"), salt.encode("utf-8"), iterations)
    return f"pbkdf2_sha256${iterations}${salt}${digest.hex()}"


def verify_pin(pin: str, pin_hash: str) -> bool:
    try:
        algorithm, iterations, salt, expected = pin_hash.split("$")
        rounds = int(iterations)
    except ValueError:
        return False
    if algorithm != "pbkdf2_sha256":
        return False
    digest = hashlib.pbkdf2_hmac("sha256", (pin or "").strip().encode("utf-8"), salt.encode("utf-8"), rounds)
    return hmac.compare_digest(digest.hex(), expected)


def require_parent(actor: Actor, family_id: str) -> Actor:
    """Ensure ``actor`` is a parent of ``family_id``."""

    if actor.role is not Role.PARENT:
        raise PermissionDeniedError(f"Only parents may do this; '{actor.id}' is a {actor.role.value}.")
    if actor.family_id != family_id:
        raise PermissionDeniedError(f"Parent '{actor.id}' does not belong to family '{family_id}'.")
    return actor


def require_child(actor: Actor, child_id: str) -> Actor:
    """Ensure ``actor`` is the child ``child_id`` acting for itself."""

    if actor.role is not Role.CHILD:
        raise PermissionDeniedError(f"Only the child may do this; '{actor.id}' is a {actor.role.value}.")
    if actor.id != child_id:
        raise PermissionDeniedError(f"Child '{actor.id}' cannot act for child '{child_id}'.")
    return actor


__all__ = ["hash_pin", "require_child", "require_parent", "verify_pin"]
