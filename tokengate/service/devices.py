from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional

from tokengate.service.errors import BadRequestError

# Order matters: iOS and Android user agents also mention Mac or Linux
_PLATFORMS = [
    (re.compile(r"Android", re.I), "Android"),
    (re.compile(r"iPhone", re.I), "iPhone"),
    (re.compile(r"iPad", re.I), "iPad"),
    (re.compile(r"iPod", re.I), "iPod"),
    (re.compile(r"Linux", re.I), "Linux"),
    (re.compile(r"Macintosh|Mac OS X", re.I), "Mac"),
    (re.compile(r"Windows|Win32|Win64", re.I), "Windows"),
]

# Edge and Opera carry "Chrome" too, Chrome carries "Safari"
_BROWSERS = [
    (re.compile(r"OPR", re.I), "Opera"),
    (re.compile(r"Edg", re.I), "Microsoft Edge"),
    (re.compile(r"FxiOS|Firefox", re.I), "Mozilla Firefox"),
    (re.compile(r"CriOS|Chrome", re.I), "Google Chrome"),
    (re.compile(r"Version/.*Safari", re.I), "Safari"),
]

UNKNOWN = "Unknown"


def _first_match(user_agent: str, table) -> str:
    for pattern, label in table:
        if pattern.search(user_agent):
            return label
    return UNKNOWN


def device_label(user_agent: Optional[str]) -> str:
    """Render a ``platform:browser`` label; empty string without a user agent."""
    if not user_agent or not user_agent.strip():
        return ""
    platform = _first_match(user_agent, _PLATFORMS)
    browser = _first_match(user_agent, _BROWSERS)
    return f"{platform}:{browser}"


@dataclass(frozen=True)
class ClientFingerprint:
    ip_address: str
    device: str


def client_fingerprint(
    ip_address: Optional[str], user_agent: Optional[str], *, required: bool
) -> ClientFingerprint:
    """Normalize the client's IP and device label.

    When ``required`` is set, a request lacking either one is rejected.
    """
    ip = (ip_address or "").strip()
    device = device_label(user_agent)
    if required:
        if not ip:
            raise BadRequestError("client IP address is required")
        if not device:
            raise BadRequestError("client device information is required")
    return ClientFingerprint(ip_address=ip, device=device)
