"""
Single-operator authorization.

The caller uid is asserted by the upstream auth proxy; this module only decides
whether that uid is the configured owner.
"""

from __future__ import annotations

import hmac
import json
import logging
from typing import Optional

from .config import OWNER_UID_K, RuntimeConfig

logger = logging.getLogger(__name__)


class Unauthenticated(Exception):
    """No caller identity on the request."""


class PermissionDenied(Exception):
    """Authenticated, but not the owner."""


def require_caller(caller_uid: Optional[str]) -> str:
    uid = (caller_uid or "").strip()
    if not uid:
        raise Unauthenticated("caller identity required")
    return uid


def require_owner(caller_uid: Optional[str], config: RuntimeConfig) -> str:
    uid = require_caller(caller_uid)
    owner = config.owner_uid()
    if not owner or uid != owner:
        raise PermissionDenied("owner only")
    return uid


def claim_owner(caller_uid: Optional[str], config: RuntimeConfig, new_owner_uid: Optional[str] = None) -> str:
    """
    Set the owner uid.

    While unset, any authenticated caller may claim it for themselves. Once set,
    only the current owner may transfer it (to themselves or `new_owner_uid`).
    """
    uid = require_caller(caller_uid)
    config.invalidate()
    current = config.owner_uid()
    target = (new_owner_uid or "").strip() or uid
    if current:
        if uid != current:
            raise PermissionDenied("only the current owner may transfer ownership")
    elif target != uid:
        raise PermissionDenied("first claim must be for the caller")
    config.set(OWNER_UID_K, target)
    logger.info(json.dumps({"event": "owner_claimed", "previous": current, "owner": target}, sort_keys=True))
    return target


def check_run_secret(provided: Optional[str], expected: str) -> bool:
    """Constant-time compare; an unset secret never matches."""
    if not expected or not provided:
        return False
    return hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8"))
