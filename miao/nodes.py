"""
Proxy node model and engine outbound serialization.

A Node is one proxy endpoint, declared manually in miao.yaml or derived from a
subscription. Each supported protocol registers a serializer that turns a Node
into a sing-box outbound dict. Protocols without a serializer are reported as
unsupported and skipped by the composer instead of failing the whole list.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from .errors import ValidationError

logger = logging.getLogger(__name__)

MANUAL_ORIGIN = "manual"

# Bandwidth hints sent with every hysteria2 outbound
HYSTERIA2_UP_MBPS = 40
HYSTERIA2_DOWN_MBPS = 350


class Protocol(Enum):
    HYSTERIA2 = "hysteria2"
    ANYTLS = "anytls"
    SHADOWSOCKS = "shadowsocks"


# Fields a manual declaration must carry, per protocol
REQUIRED_FIELDS: dict[Protocol, tuple[str, ...]] = {
    Protocol.HYSTERIA2: ("server", "server_port", "password"),
    Protocol.ANYTLS: ("server", "server_port", "password"),
    Protocol.SHADOWSOCKS: ("server", "server_port", "password", "method"),
}


@dataclass
class TLSOptions:
    server_name: Optional[str] = None
    insecure: bool = True


@dataclass(eq=False)
class Node:
    """One proxy endpoint. Two nodes are equal when their tags are."""

    tag: str
    protocol: str
    server: Optional[str] = None
    port: Optional[int] = None
    password: Optional[str] = None
    method: Optional[str] = None  # shadowsocks cipher
    tls: TLSOptions = field(default_factory=TLSOptions)
    origin: str = MANUAL_ORIGIN

    def __eq__(self, other):
        if not isinstance(other, Node):
            return NotImplemented
        return self.tag == other.tag

    def __hash__(self):
        return hash(self.tag)

    @property
    def supported(self) -> bool:
        return self.protocol in _SERIALIZERS

    @property
    def source(self) -> str:
        return "manual" if self.origin == MANUAL_ORIGIN else "subscription"

    def to_dict(self) -> dict:
        return {
            "tag": self.tag,
            "protocol": self.protocol,
            "server": self.server,
            "server_port": self.port,
            "sni": self.tls.server_name,
            "insecure": self.tls.insecure,
            "source": self.source,
            "origin": self.origin,
            "supported": self.supported,
        }


_SERIALIZERS: dict[str, Callable[[Node], dict]] = {}


def register(protocol: Protocol):
    """Register the outbound serializer for a protocol."""

    def decorator(func: Callable[[Node], dict]) -> Callable[[Node], dict]:
        _SERIALIZERS[protocol.value] = func
        return func

    return decorator


def supported_protocols() -> list[str]:
    return sorted(_SERIALIZERS)


def to_outbound(node: Node) -> dict | None:
    """Serialize a node into a sing-box outbound, or None if its protocol is unsupported."""
    serializer = _SERIALIZERS.get(node.protocol)
    if serializer is None:
        return None
    return serializer(node)


def _tls(node: Node) -> dict:
    return {
        "enabled": True,
        "server_name": node.tls.server_name,
        "insecure": node.tls.insecure,
    }


@register(Protocol.HYSTERIA2)
def _hysteria2(node: Node) -> dict:
    return {
        "type": "hysteria2",
        "tag": node.tag,
        "server": node.server,
        "server_port": node.port,
        "password": node.password,
        "up_mbps": HYSTERIA2_UP_MBPS,
        "down_mbps": HYSTERIA2_DOWN_MBPS,
        "tls": _tls(node),
    }


@register(Protocol.ANYTLS)
def _anytls(node: Node) -> dict:
    return {
        "type": "anytls",
        "tag": node.tag,
        "server": node.server,
        "server_port": node.port,
        "password": node.password,
        "tls": _tls(node),
    }


@register(Protocol.SHADOWSOCKS)
def _shadowsocks(node: Node) -> dict:
    return {
        "type": "shadowsocks",
        "tag": node.tag,
        "server": node.server,
        "server_port": node.port,
        "method": node.method,
        "password": node.password,
    }


def _port(value: Any) -> int | None:
    if value is None or value == "":
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def from_clash_proxy(proxy: dict, origin: str) -> Node | None:
    """Build a Node from one entry of a Clash `proxies:` list.

    Returns None for entries without a name or type. Unknown protocol types are
    kept as unsupported nodes so the caller can log them.
    """
    name = proxy.get("name")
    proxy_type = proxy.get("type")
    if not name or not proxy_type:
        return None

    # Clash calls shadowsocks "ss"
    protocol = "shadowsocks" if proxy_type == "ss" else str(proxy_type)

    # hysteria2 servers are commonly self-signed, so TLS verification stays off
    insecure = proxy.get("skip-cert-verify")
    if protocol == Protocol.HYSTERIA2.value or insecure is None:
        insecure = True

    return Node(
        tag=str(name),
        protocol=protocol,
        server=proxy.get("server"),
        port=_port(proxy.get("port", proxy.get("server_port"))),
        password=proxy.get("password"),
        method=proxy.get("cipher"),
        tls=TLSOptions(server_name=proxy.get("sni"), insecure=bool(insecure)),
        origin=origin,
    )


def _manual_record(record: Any) -> dict:
    """Normalize a manual declaration to a dict.

    Older miao.yaml files list nodes as JSON-encoded sing-box outbounds, so a
    string entry is decoded and its `type` read as the protocol.
    """
    if isinstance(record, str):
        try:
            record = json.loads(record)
        except json.JSONDecodeError as e:
            raise ValidationError(f"Node declaration is not valid JSON: {e}")
    if not isinstance(record, dict):
        raise ValidationError("Node declaration must be a mapping")

    data = dict(record)
    if "protocol" not in data and "type" in data:
        data["protocol"] = data["type"]
    tls = data.get("tls") or {}
    if isinstance(tls, dict):
        data.setdefault("sni", tls.get("server_name"))
        data.setdefault("insecure", tls.get("insecure"))
    return data


def validate_manual(record: Any) -> dict:
    """Check a manual node declaration. Returns the normalized record."""
    data = _manual_record(record)

    tag = data.get("tag")
    if not tag or not isinstance(tag, str):
        raise ValidationError("Node is missing required field 'tag'")

    try:
        protocol = Protocol(data.get("protocol"))
    except ValueError:
        raise ValidationError(
            f"Node '{tag}' has unsupported protocol {data.get('protocol')!r}; "
            f"expected one of {', '.join(supported_protocols())}"
        )

    missing = [f for f in REQUIRED_FIELDS[protocol] if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(
            f"Node '{tag}' ({protocol.value}) is missing required fields: {', '.join(missing)}"
        )

    port = _port(data.get("server_port"))
    if port is None or not 0 < port < 65536:
        raise ValidationError(f"Node '{tag}' has invalid server_port {data.get('server_port')!r}")

    return data


def from_manual(record: Any) -> Node:
    """Build a Node from a manual declaration without validating it."""
    data = _manual_record(record)
    insecure = data.get("insecure")
    return Node(
        tag=str(data.get("tag") or ""),
        protocol=str(data.get("protocol") or ""),
        server=data.get("server"),
        port=_port(data.get("server_port")),
        password=data.get("password"),
        method=data.get("method"),
        tls=TLSOptions(
            server_name=data.get("sni"),
            insecure=True if insecure is None else bool(insecure),
        ),
        origin=MANUAL_ORIGIN,
    )
