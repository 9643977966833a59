from __future__ import annotations

import ipaddress
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from authflow.service.i18n import CatalogTranslator, Translator, get_translator
from authflow.storage.models import ClientType

IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]


@dataclass(frozen=True)
class DeviceInfo:
    device_type: str = "unknown"
    os: str = "unknown"
    browser: str = "unknown"


_OS_PATTERNS = (
    (re.compile(r"windows nt", re.I), "Windows"),
    (re.compile(r"iphone|ipad|ipod", re.I), "iOS"),
    (re.compile(r"android", re.I), "Android"),
    (re.compile(r"mac os x|macintosh", re.I), "macOS"),
    (re.compile(r"cros", re.I), "ChromeOS"),
    (re.compile(r"linux", re.I), "Linux"),
)

# Order matters: Edge and Opera also advertise Chrome, Chrome also advertises Safari
_BROWSER_PATTERNS = (
    (re.compile(r"edg(e|a|ios)?/", re.I), "Edge"),
    (re.compile(r"opr/|opera", re.I), "Opera"),
    (re.compile(r"firefox|fxios", re.I), "Firefox"),
    (re.compile(r"chrome|crios", re.I), "Chrome"),
    (re.compile(r"safari", re.I), "Safari"),
    (re.compile(r"okhttp|cfnetwork|dart", re.I), "App"),
)

_TABLET = re.compile(r"ipad|tablet|(android(?!.*mobile))", re.I)
_MOBILE = re.compile(r"mobile|iphone|ipod|android", re.I)
_BOT = re.compile(r"bot|crawler|spider|curl|wget|python-requests|httpx", re.I)


def parse_user_agent(user_agent: Optional[str]) -> DeviceInfo:
    """Best-effort device, OS and browser detection; unknown parts stay "unknown"."""
    if not user_agent:
        return DeviceInfo()
    os_name = next((name for pattern, name in _OS_PATTERNS if pattern.search(user_agent)), "unknown")
    browser = next(
        (name for pattern, name in _BROWSER_PATTERNS if pattern.search(user_agent)), "unknown"
    )
    if _BOT.search(user_agent):
        device_type = "bot"
    elif _TABLET.search(user_agent):
        device_type = "tablet"
    elif _MOBILE.search(user_agent):
        device_type = "mobile"
    else:
        device_type = "desktop"
    return DeviceInfo(device_type=device_type, os=os_name, browser=browser)


def _in_networks(address: str, networks: Sequence[IPNetwork]) -> bool:
    try:
        ip = ipaddress.ip_address(address)
    except ValueError:
        return False
    return any(ip in network for network in networks)


def client_ip(
    forwarded_for: Optional[str],
    peer: Optional[str],
    trusted_proxies: Sequence[str] = (),
) -> str:
    """Caller address used for rate limits and login history.

    X-Forwarded-For is only honored when the socket peer is a trusted proxy;
    the nearest hop that is not itself a trusted proxy is the client.
    """
    if not peer:
        return "unknown"
    networks = [ipaddress.ip_network(entry, strict=False) for entry in trusted_proxies]
    if not forwarded_for or not _in_networks(peer, networks):
        return peer
    hops = [hop.strip() for hop in forwarded_for.split(",") if hop.strip()]
    for hop in reversed(hops):
        if not _in_networks(hop, networks):
            return hop
    return peer


def client_type_from_header(value: Optional[str]) -> ClientType:
    normalized = (value or "").strip().lower()
    if normalized in {"ios", "mobile_ios"}:
        return ClientType.MOBILE_IOS
    if normalized in {"android", "mobile_android"}:
        return ClientType.MOBILE_ANDROID
    return ClientType.WEB


@dataclass
class RequestContext:
    """Per-request facts every flow needs: caller language and origin."""

    language: str = "en"
    translator: Translator = field(default_factory=CatalogTranslator)
    ip: str = "unknown"
    user_agent: str = ""
    client_type: ClientType = ClientType.WEB
    device: DeviceInfo = field(default_factory=DeviceInfo)

    def t(self, key: str, **params: Any) -> str:
        return self.translator.t(key, **params)

    @classmethod
    def from_headers(
        cls,
        headers: Mapping[str, str],
        *,
        peer: Optional[str] = None,
        language: str = "en",
        trusted_proxies: Sequence[str] = (),
    ) -> "RequestContext":
        lowered = {key.lower(): value for key, value in headers.items()}
        user_agent = lowered.get("user-agent", "")
        return cls(
            language=language,
            translator=get_translator(language),
            ip=client_ip(lowered.get("x-forwarded-for"), peer, trusted_proxies),
            user_agent=user_agent,
            client_type=client_type_from_header(lowered.get("x-client-type")),
            device=parse_user_agent(user_agent),
        )


@dataclass
class FlowResult:
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
