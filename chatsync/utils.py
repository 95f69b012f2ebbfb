"""
Utility functions: HMAC signing and chat address (JID) helpers.

A chat address has the form ``local@server``:

- ``5511999999999@s.whatsapp.net`` / ``...@c.us``  direct subscriber
- ``120363025246125486@g.us``                      group
- ``178364536912345@lid``                          alias / business address
- ``status@broadcast``, ``0@s.whatsapp.net``       system pseudo-chats
"""

import hmac
import hashlib
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

GROUP_SERVER = "g.us"
ALIAS_SERVER = "lid"
SUBSCRIBER_SERVERS = ("s.whatsapp.net", "c.us")
SYSTEM_CHAT_IDS = frozenset({"0@s.whatsapp.net", "status@broadcast"})

_SUBSCRIBER_NUMBER = re.compile(r"^\d{7,15}$")


def compute_hmac_signature(body: bytes, secret: str) -> str:
    """Hex-encoded HMAC-SHA256 of body."""
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_hmac_signature(body: bytes, signature: str, secret: str) -> bool:
    """
    Verify HMAC-SHA256 signature.

    Args:
        body: Raw bytes that were signed
        signature: Hex-encoded signature supplied by the caller
        secret: Shared secret

    Returns:
        True if signature is valid, False otherwise
    """
    logger.debug(f"Verifying HMAC signature over {len(body)} bytes")

    expected_signature = compute_hmac_signature(body, secret)

    # Constant-time comparison
    is_valid = hmac.compare_digest(expected_signature, signature)
    logger.debug(f"HMAC signature verification: {'valid' if is_valid else 'invalid'}")

    return is_valid


# =============================================================================
# Chat Address Helpers
# =============================================================================

def split_jid(jid: Optional[str]) -> tuple[str, str]:
    """Split ``local@server``; the device suffix (``local:12@server``) is dropped."""
    if not jid:
        return "", ""
    local, _, server = jid.partition("@")
    local = local.split(":", 1)[0]
    return local, server


def local_part(jid: Optional[str]) -> str:
    return split_jid(jid)[0]


def is_group_jid(jid: Optional[str]) -> bool:
    return split_jid(jid)[1] == GROUP_SERVER


def is_alias_jid(jid: Optional[str]) -> bool:
    return split_jid(jid)[1] == ALIAS_SERVER


def is_system_chat(jid: Optional[str]) -> bool:
    """Status updates, broadcast lists and the zero address are not conversations."""
    if not jid:
        return False
    local, server = split_jid(jid)
    return (
        jid in SYSTEM_CHAT_IDS
        or local == "status"
        or server == "broadcast"
        or local == "0"
    )


def is_syncable_chat(jid: Optional[str]) -> bool:
    """
    Decide whether a chat enumerated from the gateway should be synced.

    Accepted: groups, numeric subscriber addresses and explicitly tagged
    alias/business addresses. Everything else, including empty ids and
    system pseudo-chats, is rejected.
    """
    if not jid or is_system_chat(jid):
        return False

    local, server = split_jid(jid)
    if not local:
        return False
    if server in (GROUP_SERVER, ALIAS_SERVER):
        return True
    if server in SUBSCRIBER_SERVERS:
        return bool(_SUBSCRIBER_NUMBER.match(local))
    return False
