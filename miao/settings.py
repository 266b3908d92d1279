"""
The user-edited settings document (miao.yaml).

Holds the subscription URLs, manual node declarations, the engine working
directory and the rule-set source. The HTTP API edits it through SettingsStore,
which validates input and rewrites the file atomically.
"""

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Optional
from urllib.parse import urlparse

import yaml

from .errors import NotFoundError, ValidationError
from .fsutil import atomic_write
from .nodes import Node, from_manual, validate_manual

logger = logging.getLogger(__name__)

DEFAULT_NODE_FILTER = ["JP", "TW", "SG"]


class TagConflictPolicy(Enum):
    """Which node keeps a tag when a manual and a subscription node share it."""

    MANUAL = "manual"  # first occurrence wins; manual nodes are composed first
    SUBSCRIPTION = "subscription"  # last write wins


@dataclass
class Settings:
    """Parsed miao.yaml."""

    subs: list[str] = field(default_factory=list)
    nodes: list[Any] = field(default_factory=list)
    sing_box_home: str = "."
    port: Optional[int] = None
    direct_txt: Optional[str] = None
    node_filter: list[str] = field(default_factory=lambda: list(DEFAULT_NODE_FILTER))
    tag_conflict: TagConflictPolicy = TagConflictPolicy.MANUAL
    template: Optional[str] = None
    base_dir: Path = Path(".")

    @classmethod
    def from_dict(cls, data: dict, base_dir: Path = Path(".")) -> "Settings":
        rules = data.get("rules") or {}
        node_filter = data.get("node_filter")
        try:
            tag_conflict = TagConflictPolicy(data.get("tag_conflict") or "manual")
        except ValueError:
            raise ValidationError(
                f"tag_conflict must be 'manual' or 'subscription', got {data.get('tag_conflict')!r}"
            )
        return cls(
            subs=[str(s) for s in data.get("subs") or []],
            nodes=list(data.get("nodes") or []),
            sing_box_home=str(data.get("sing_box_home") or "."),
            port=data.get("port"),
            direct_txt=rules.get("direct_txt"),
            node_filter=DEFAULT_NODE_FILTER[:] if node_filter is None else [str(k) for k in node_filter],
            tag_conflict=tag_conflict,
            template=data.get("template"),
            base_dir=base_dir,
        )

    def to_dict(self) -> dict:
        data = {
            "port": self.port,
            "sing_box_home": self.sing_box_home,
            "subs": list(self.subs),
            "nodes": list(self.nodes),
            "node_filter": list(self.node_filter),
            "tag_conflict": self.tag_conflict.value,
        }
        if self.direct_txt:
            data["rules"] = {"direct_txt": self.direct_txt}
        if self.template:
            data["template"] = self.template
        return {k: v for k, v in data.items() if v is not None}

    @property
    def home(self) -> Path:
        """Engine working directory, relative paths resolved against miao.yaml's directory."""
        home = Path(self.sing_box_home).expanduser()
        if not home.is_absolute():
            home = self.base_dir / home
        return home

    @property
    def config_path(self) -> Path:
        return self.home / "config.json"

    @property
    def template_path(self) -> Optional[Path]:
        if not self.template:
            return None
        path = Path(self.template).expanduser()
        return path if path.is_absolute() else self.base_dir / path

    def manual_nodes(self) -> list[Node]:
        """Manual declarations as Nodes. Malformed entries are logged and skipped."""
        result = []
        for record in self.nodes:
            try:
                result.append(from_manual(record))
            except ValidationError as e:
                logger.warning(f"Skipping manual node: {e}")
        return result


def validate_sub_url(url: str) -> str:
    """Check that url is an absolute http(s) URL."""
    url = (url or "").strip()
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid subscription URL: {url!r}")
    return url


class SettingsStore:
    """Loads, edits and saves miao.yaml."""

    def __init__(self, path: Path):
        self.path = Path(path).expanduser().resolve()
        self._lock = threading.Lock()
        self._settings: Optional[Settings] = None

    def load(self) -> Settings:
        """(Re)read the settings document. A missing file yields defaults."""
        with self._lock:
            data = {}
            if self.path.exists():
                data = yaml.safe_load(self.path.read_text()) or {}
                if not isinstance(data, dict):
                    raise ValidationError(f"{self.path} must contain a mapping")
            else:
                logger.warning(f"Settings file {self.path} not found, using defaults")
            self._settings = Settings.from_dict(data, base_dir=self.path.parent)
            return self._settings

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            return self.load()
        return self._settings

    def _save_locked(self):
        content = yaml.safe_dump(
            self._settings.to_dict(), sort_keys=False, allow_unicode=True
        )
        atomic_write(self.path, content)
        logger.info(f"Saved settings to {self.path}")

    # Subscriptions
    def add_sub(self, url: str) -> str:
        url = validate_sub_url(url)
        settings = self.settings
        with self._lock:
            if url in settings.subs:
                raise ValidationError(f"Subscription already exists: {url}")
            settings.subs.append(url)
            self._save_locked()
        logger.info(f"Added subscription {url}")
        return url

    def remove_sub(self, url: str):
        settings = self.settings
        with self._lock:
            if url not in settings.subs:
                raise NotFoundError(f"Subscription not found: {url}")
            settings.subs.remove(url)
            self._save_locked()
        logger.info(f"Removed subscription {url}")

    # Manual nodes
    def add_node(self, record: dict) -> Node:
        data = validate_manual(record)
        settings = self.settings
        with self._lock:
            if any(node.tag == data["tag"] for node in settings.manual_nodes()):
                raise ValidationError(f"Node '{data['tag']}' already exists")
            stored = {k: v for k, v in data.items() if v is not None and k != "type"}
            settings.nodes.append(stored)
            self._save_locked()
        logger.info(f"Added manual node {data['tag']}")
        return from_manual(data)

    def remove_node(self, tag: str):
        settings = self.settings
        with self._lock:
            for index, node in enumerate(settings.nodes):
                try:
                    node_tag = from_manual(node).tag
                except ValidationError:
                    continue
                if node_tag == tag:
                    del settings.nodes[index]
                    self._save_locked()
                    logger.info(f"Removed manual node {tag}")
                    return
        raise NotFoundError(f"Node not found: {tag}")
