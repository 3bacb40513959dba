"""
Security utilities: input sanitization, scope and ownership checks.

Sanitization rules run depth-first over every string inside a payload,
including nested objects and lists. Global rules run before field rules.
"""

from __future__ import annotations

import html
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from better_query.specs.entity import (
    OwnershipSpec,
    OwnershipStrategy,
    SanitizationRule,
    SanitizationSpec,
    SanitizeKind,
)

# Scopes/roles that satisfy the flexible ownership strategy
ADMIN_SCOPES = frozenset({"admin", "super_admin", "administrator"})


# =============================================================================
# Sanitization
# =============================================================================


def escape_html(text: str) -> str:
    """Replace HTML-significant characters with entities."""
    return html.escape(text, quote=True)


def strip_angle_brackets(text: str) -> str:
    """Remove ``<`` and ``>`` so no tag can be formed."""
    return text.replace("<", "").replace(">", "")


def apply_rule(text: str, rule: SanitizationRule) -> str:
    """Apply one sanitization rule to a string."""
    kind = rule.type
    if kind == SanitizeKind.TRIM:
        return text.strip()
    if kind == SanitizeKind.ESCAPE:
        return escape_html(text)
    if kind == SanitizeKind.LOWERCASE:
        return text.lower()
    if kind == SanitizeKind.UPPERCASE:
        return text.upper()
    if kind == SanitizeKind.STRIP:
        return strip_angle_brackets(text)
    if kind == SanitizeKind.CUSTOM:
        return rule.custom_fn(text) if rule.custom_fn else text
    return text


def sanitize_value(value: Any, rules: Sequence[SanitizationRule]) -> Any:
    """
    Apply ``rules`` in order to every string reachable from ``value``.

    Dicts and lists are rebuilt; other values pass through untouched.
    """
    if not rules:
        return value
    if isinstance(value, str):
        for rule in rules:
            value = apply_rule(value, rule)
        return value
    if isinstance(value, Mapping):
        return {key: sanitize_value(item, rules) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [sanitize_value(item, rules) for item in value]
    return value


def sanitize(data: dict[str, Any], spec: SanitizationSpec | None) -> dict[str, Any]:
    """
    Sanitize a payload according to a resource's sanitization config.

    Args:
        data: Input payload
        spec: Sanitization config; ``None`` returns the payload unchanged

    Returns:
        A new, sanitized payload
    """
    if spec is None:
        return data
    result = sanitize_value(data, spec.global_rules) if spec.global_rules else dict(data)
    for field_name, rules in spec.field_rules.items():
        if field_name in result:
            result[field_name] = sanitize_value(result[field_name], rules)
    return result


# =============================================================================
# Identity helpers
# =============================================================================


def extract_user_id(user: Mapping[str, Any] | None) -> Any:
    """User id from ``id``, ``userId`` or ``user_id``."""
    if not user:
        return None
    for key in ("id", "userId", "user_id"):
        if user.get(key) is not None:
            return user[key]
    return None


def extract_scopes(user: Mapping[str, Any] | None) -> list[str]:
    """User scopes from ``scopes``, falling back to ``roles``."""
    if not user:
        return []
    scopes = user.get("scopes")
    if scopes is None:
        scopes = user.get("roles")
    if scopes is None:
        return []
    if isinstance(scopes, str):
        return [scopes]
    return list(scopes)


def has_required_scopes(user_scopes: Iterable[str], required_scopes: Iterable[str]) -> bool:
    """True iff every required scope is held. Vacuously true."""
    held = set(user_scopes)
    return all(scope in held for scope in required_scopes)


def is_admin(scopes: Iterable[str]) -> bool:
    return not ADMIN_SCOPES.isdisjoint(scopes)


def check_ownership(
    record: Mapping[str, Any] | None,
    user: Mapping[str, Any] | None,
    ownership: OwnershipSpec | None,
    scopes: Iterable[str] | None = None,
) -> bool:
    """
    Check whether ``user`` may act on ``record``.

    Args:
        record: Existing record (or the payload being created)
        user: Acting user
        ownership: Ownership config; ``None`` always passes
        scopes: Effective scopes; derived from ``user`` when omitted

    Returns:
        True if access is allowed
    """
    if ownership is None:
        return True
    if ownership.strategy == OwnershipStrategy.FLEXIBLE:
        effective = list(scopes) if scopes is not None else extract_scopes(user)
        if is_admin(effective):
            return True
    user_id = extract_user_id(user)
    if user_id is None or record is None:
        return False
    owner = record.get(ownership.field)
    return owner is not None and str(owner) == str(user_id)


# =============================================================================
# Request metadata
# =============================================================================


@dataclass(frozen=True)
class SecurityContext:
    """Caller metadata recorded in audit events and used for rate-limit keys."""

    ip: str = "unknown"
    user_agent: str | None = None


def extract_security_context(request: Any) -> SecurityContext:
    """
    Derive caller metadata from a Starlette/FastAPI request.

    The first hop of ``X-Forwarded-For`` wins, then ``X-Real-IP``, then the
    socket peer.
    """
    if request is None:
        return SecurityContext()
    headers = request.headers
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        ip = forwarded.split(",")[0].strip()
    else:
        ip = headers.get("x-real-ip") or (request.client.host if request.client else "unknown")
    return SecurityContext(ip=ip or "unknown", user_agent=headers.get("user-agent"))
