"""Map raw conversation addresses to stable external identifiers.

The network addresses direct chats either by phone number
(``15551234567:9@s.whatsapp.net``, where ``:9`` is the sending device) or by
an opaque linked-device id (``123456789012345@lid``). Linked-device ids are
used verbatim as lookup keys; no attempt is made to translate them to phone
numbers.
"""

from __future__ import annotations

from .errors import IdentityUnresolved
from .models import AddressKind, ResolvedIdentity

DIRECT_SUFFIX = "@s.whatsapp.net"
LINKED_DEVICE_SUFFIX = "@lid"
GROUP_SUFFIX = "@g.us"

_SUFFIXES: tuple[tuple[str, AddressKind], ...] = (
    (DIRECT_SUFFIX, AddressKind.DIRECT),
    (LINKED_DEVICE_SUFFIX, AddressKind.LINKED_DEVICE),
    (GROUP_SUFFIX, AddressKind.GROUP),
)


def classify_address(address: str) -> AddressKind | None:
    """Return the address kind, or None for unrecognized forms."""
    for suffix, kind in _SUFFIXES:
        if address.endswith(suffix):
            return kind
    return None


def resolve_address(address: str) -> ResolvedIdentity:
    """Resolve ``address`` or raise :class:`IdentityUnresolved`."""
    raw = (address or "").strip()
    kind = classify_address(raw)
    if kind is None:
        raise IdentityUnresolved(raw, "unrecognized address form")
    if kind is AddressKind.GROUP:
        raise IdentityUnresolved(raw, "group conversations have no single identifier")

    if kind is AddressKind.DIRECT:
        external_id = raw[: -len(DIRECT_SUFFIX)].split(":", 1)[0]
    else:
        external_id = raw[: -len(LINKED_DEVICE_SUFFIX)]

    if not external_id:
        raise IdentityUnresolved(raw, "empty identifier")
    return ResolvedIdentity(external_id=external_id, address_kind=kind)


def account_identifier(user_id: str) -> str:
    """Strip the device and server segments from the session's own user id."""
    return user_id.split(":", 1)[0].split("@", 1)[0]
