"""
Engine configuration composition.

Merges the base sing-box template with manual and subscription-derived nodes
into one configuration document and writes it to <sing_box_home>/config.json.
The first outbound of the template is the selector group; after composition its
member list holds exactly the tags of the node outbounds, in composition order.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from .errors import ConfigWriteError, NotFoundError, ValidationError
from .fsutil import atomic_write, file_stat
from .nodes import Node, to_outbound
from .settings import SettingsStore, TagConflictPolicy
from .subscription import SubscriptionFetcher, SubscriptionResult, keyword_filter

logger = logging.getLogger(__name__)

SELECTOR_TAG = "proxy"
DIRECT_TAG = "direct"
RULE_SET_TAG = "chinasite"
RULE_SET_FILE = "chinasite.srs"


def default_template() -> dict:
    """The base sing-box document: DNS, TUN inbound, routing and an empty selector."""
    return {
        "log": {
            "disabled": False,
            "output": "./box.log",
            "timestamp": True,
            "level": "info",
        },
        "experimental": {
            "clash_api": {
                "external_controller": "0.0.0.0:9090",
                "external_ui": "dashboard",
            },
        },
        "dns": {
            "final": "googledns",
            "strategy": "prefer_ipv4",
            "independent_cache": True,
            "servers": [
                {"type": "udp", "tag": "googledns", "server": "8.8.8.8", "detour": SELECTOR_TAG},
                {"type": "udp", "tag": "local", "server": "223.5.5.5"},
            ],
            "rules": [
                {"rule_set": [RULE_SET_TAG], "action": "route", "server": "local"},
            ],
        },
        "inbounds": [
            {
                "type": "tun",
                "tag": "tun-in",
                "interface_name": "sing-tun",
                "address": ["172.18.0.1/30"],
                "mtu": 9000,
                "auto_route": True,
                "strict_route": True,
                "auto_redirect": True,
            },
        ],
        "outbounds": [
            {"type": "selector", "tag": SELECTOR_TAG, "outbounds": []},
            {"type": "direct", "tag": DIRECT_TAG},
        ],
        "route": {
            "final": SELECTOR_TAG,
            "auto_detect_interface": True,
            "default_domain_resolver": "local",
            "rules": [
                {"action": "sniff"},
                {"protocol": "dns", "action": "hijack-dns"},
                {"ip_is_private": True, "action": "route", "outbound": DIRECT_TAG},
                {
                    "process_path": ["/usr/bin/qbittorrent", "/usr/bin/NetworkManager"],
                    "action": "route",
                    "outbound": DIRECT_TAG,
                },
                {"rule_set": [RULE_SET_TAG], "action": "route", "outbound": DIRECT_TAG},
            ],
            "rule_set": [
                {"type": "local", "tag": RULE_SET_TAG, "format": "binary", "path": RULE_SET_FILE},
            ],
        },
    }


def load_template(path: Optional[Path]) -> dict:
    """Read a custom template from JSON, or return the built-in one."""
    if path is None:
        return default_template()
    try:
        template = json.loads(Path(path).read_text())
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot load template {path}: {e}")
    outbounds = template.get("outbounds") if isinstance(template, dict) else None
    if not outbounds or not isinstance(outbounds[0].get("outbounds"), list):
        raise ValidationError(f"Template {path} must start with a group outbound that has an 'outbounds' list")
    return template


def _merge_nodes(
    candidates: list[tuple[Node, dict]],
    policy: TagConflictPolicy,
) -> tuple[list[tuple[Node, dict]], list[str]]:
    """Resolve duplicate tags among composable nodes with policy, keeping order."""
    merged: dict[str, tuple[Node, dict]] = {}
    conflicts = []
    for node, outbound in candidates:
        if node.tag in merged:
            conflicts.append(node.tag)
            if policy is TagConflictPolicy.MANUAL:
                logger.warning(f"Duplicate tag '{node.tag}' from {node.origin} ignored")
                continue
            previous, _ = merged.pop(node.tag)
            logger.warning(f"Duplicate tag '{node.tag}' from {node.origin} replaces {previous.origin}")
        merged[node.tag] = (node, outbound)
    return list(merged.values()), conflicts


@dataclass
class Composition:
    """A composed configuration document plus what went into it."""

    document: dict
    node_tags: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    conflicts: list[str] = field(default_factory=list)


def compose(
    template: dict,
    manual_nodes: list[Node],
    results: list[SubscriptionResult],
    policy: TagConflictPolicy = TagConflictPolicy.MANUAL,
) -> Composition:
    """Build the engine configuration. Deterministic for identical inputs.

    Nodes whose protocol has no serializer are skipped. Failed subscriptions
    contribute nothing.
    """
    document = copy.deepcopy(template)
    outbounds = document.setdefault("outbounds", [])
    if not outbounds:
        outbounds.append({"type": "selector", "tag": SELECTOR_TAG, "outbounds": []})
    group = outbounds[0]
    group["outbounds"] = []

    if not any(o.get("tag") == DIRECT_TAG for o in outbounds):
        outbounds.append({"type": "direct", "tag": DIRECT_TAG})
    reserved = {o.get("tag") for o in outbounds}

    composition = Composition(document=document)
    candidates = []
    nodes = list(manual_nodes)
    for result in results:
        if result.ok:
            nodes.extend(result.nodes)
    # Only composable nodes take part in tag conflict resolution
    for node in nodes:
        if not node.tag:
            logger.warning(f"Skipping node without tag ({node.origin})")
            continue
        if node.tag in reserved:
            logger.warning(f"Skipping node '{node.tag}': tag is reserved by the template")
            composition.skipped.append(node.tag)
            continue
        outbound = to_outbound(node)
        if outbound is None:
            logger.warning(f"Skipping node '{node.tag}': unsupported protocol {node.protocol!r}")
            composition.skipped.append(node.tag)
            continue
        candidates.append((node, outbound))

    merged, composition.conflicts = _merge_nodes(candidates, policy)
    for node, outbound in merged:
        group["outbounds"].append(node.tag)
        outbounds.append(outbound)
        composition.node_tags.append(node.tag)

    return composition


def render(document: dict) -> str:
    return json.dumps(document, indent=4, ensure_ascii=False)


class ConfigComposer:
    """Runs a full composition cycle: fetch subscriptions, compose, write."""

    def __init__(self, store: SettingsStore, fetcher: SubscriptionFetcher):
        self.store = store
        self.fetcher = fetcher
        self.last_generated: Optional[datetime] = None

    @property
    def config_path(self) -> Path:
        return self.store.settings.config_path

    async def generate(self) -> dict:
        """Fetch every subscription, compose and write the document.

        Subscription failures are reported in the result, never raised. Raises
        ConfigWriteError if the document could not be written; the previous
        file is left intact in that case.
        """
        settings = self.store.settings
        results = await self.fetcher.fetch_all(settings.subs, keyword_filter(settings.node_filter))
        template = load_template(settings.template_path)
        manual = settings.manual_nodes()
        composition = compose(template, manual, results, settings.tag_conflict)

        path = settings.config_path
        try:
            atomic_write(path, render(composition.document))
        except OSError as e:
            logger.error(f"Failed to write config {path}: {e}")
            raise ConfigWriteError(f"Failed to write {path}: {e}")

        self.last_generated = datetime.now()
        logger.info(
            f"Config written to {path}: {len(composition.node_tags)} nodes, "
            f"{sum(1 for r in results if not r.ok)} failed subscriptions"
        )
        return {
            "path": str(path),
            "node_count": len(composition.node_tags),
            "nodes": composition.node_tags,
            "skipped": composition.skipped,
            "conflicts": composition.conflicts,
            "subscriptions": [r.to_dict() for r in results],
            "generated_at": self.last_generated.isoformat(),
        }

    def read_current(self) -> dict:
        """The written document and its file metadata."""
        path = self.config_path
        if not path.exists():
            raise NotFoundError("config file not found")
        try:
            content = json.loads(path.read_text())
        except json.JSONDecodeError:
            content = {}
        return {"config_stat": file_stat(path), "config_content": content}

    def known_nodes(self) -> list[Node]:
        """Manual nodes followed by the nodes of each subscription's last successful fetch."""
        settings = self.store.settings
        nodes = settings.manual_nodes()
        for url in settings.subs:
            result = self.fetcher.last_result(url)
            if result is not None and result.ok:
                nodes.extend(result.nodes)
        return nodes
