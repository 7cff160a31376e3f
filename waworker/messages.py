"""Payload helpers shared by the send routes."""

from __future__ import annotations

USER_SERVER = "s.whatsapp.net"
GROUP_SERVER = "g.us"


def normalize_jid(number: str, *, server: str = USER_SERVER) -> str:
    """Turn a bare number or group id into a JID.

    Values that already carry a domain (``...@s.whatsapp.net``, ``...@g.us``)
    are returned unchanged.
    """

    cleaned = str(number).strip()
    if not cleaned:
        raise ValueError("destination_required")
    if "@" in cleaned:
        return cleaned
    return f"{cleaned}@{server}"


def build_vcard(display_name: str, phone: str, organization: str = "") -> str:
    digits = "".join(ch for ch in str(phone) if ch.isdigit())
    return (
        "BEGIN:VCARD\n"
        "VERSION:3.0\n"
        f"FN:{display_name}\n"
        f"ORG:{organization};\n"
        f"TEL;type=CELL;type=VOICE;waid={digits}:+{digits}\n"
        "END:VCARD"
    )


def compose_link_message(message: str, link: str, *, title: str, description: str) -> str:
    # link must appear in the body
    body = message if link in message else f"{message}\n{link}"
    return f"*{title}*\n_{description}_\n\n{body}"


__all__ = [
    "USER_SERVER",
    "GROUP_SERVER",
    "normalize_jid",
    "build_vcard",
    "compose_link_message",
]
