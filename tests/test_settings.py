"""Tests for the miao.yaml settings store."""

import pytest
import yaml

from miao.errors import NotFoundError, ValidationError
from miao.settings import DEFAULT_NODE_FILTER, SettingsStore, TagConflictPolicy, validate_sub_url

HY2 = {"tag": "home", "protocol": "hysteria2", "server": "h.example", "server_port": 443, "password": "pw"}


def _write(tmp_path, data):
    path = tmp_path / "miao.yaml"
    path.write_text(yaml.safe_dump(data))
    return path


def test_missing_file_yields_defaults(tmp_path):
    settings = SettingsStore(tmp_path / "absent.yaml").settings

    assert settings.subs == []
    assert settings.nodes == []
    assert settings.node_filter == DEFAULT_NODE_FILTER
    assert settings.tag_conflict is TagConflictPolicy.MANUAL
    assert settings.home == tmp_path


def test_relative_home_resolves_against_settings_file(tmp_path):
    path = _write(tmp_path, {"sing_box_home": "engine", "rules": {"direct_txt": "https://r.example/list"}})

    settings = SettingsStore(path).settings

    assert settings.home == tmp_path / "engine"
    assert settings.config_path == tmp_path / "engine" / "config.json"
    assert settings.direct_txt == "https://r.example/list"


def test_empty_node_filter_is_kept(tmp_path):
    settings = SettingsStore(_write(tmp_path, {"node_filter": []})).settings

    assert settings.node_filter == []


def test_bad_tag_conflict_policy_is_rejected(tmp_path):
    with pytest.raises(ValidationError, match="tag_conflict"):
        SettingsStore(_write(tmp_path, {"tag_conflict": "newest"})).load()


def test_non_mapping_document_is_rejected(tmp_path):
    path = tmp_path / "miao.yaml"
    path.write_text("- just\n- a list\n")

    with pytest.raises(ValidationError):
        SettingsStore(path).load()


def test_validate_sub_url():
    assert validate_sub_url(" https://sub.example/a ") == "https://sub.example/a"
    for bad in ["", "ftp://sub.example", "sub.example/a", "https://"]:
        with pytest.raises(ValidationError):
            validate_sub_url(bad)


def test_add_and_remove_subscription_persists(tmp_path):
    path = _write(tmp_path, {"port": 6161, "subs": []})
    store = SettingsStore(path)

    store.add_sub("https://sub.example/a")
    with pytest.raises(ValidationError, match="already exists"):
        store.add_sub("https://sub.example/a")

    assert yaml.safe_load(path.read_text())["subs"] == ["https://sub.example/a"]
    assert yaml.safe_load(path.read_text())["port"] == 6161

    store.remove_sub("https://sub.example/a")
    assert yaml.safe_load(path.read_text())["subs"] == []
    with pytest.raises(NotFoundError):
        store.remove_sub("https://sub.example/a")


def test_add_node_validates_and_rejects_duplicates(tmp_path):
    store = SettingsStore(_write(tmp_path, {}))

    node = store.add_node(HY2)

    assert node.tag == "home"
    assert node.source == "manual"
    with pytest.raises(ValidationError, match="already exists"):
        store.add_node(HY2)
    with pytest.raises(ValidationError):
        store.add_node({"tag": "x", "protocol": "hysteria2", "server": "s", "server_port": 1})
    assert [n.tag for n in SettingsStore(store.path).settings.manual_nodes()] == ["home"]


def test_remove_node_handles_legacy_entries(tmp_path):
    legacy = '{"type": "anytls", "tag": "old", "server": "o.example", "server_port": 443, "password": "pw"}'
    path = _write(tmp_path, {"nodes": [legacy, HY2]})
    store = SettingsStore(path)

    store.remove_node("old")

    assert [n.tag for n in store.settings.manual_nodes()] == ["home"]
    assert yaml.safe_load(path.read_text())["nodes"] == [HY2]
    with pytest.raises(NotFoundError):
        store.remove_node("old")


def test_malformed_manual_entry_is_skipped(tmp_path):
    store = SettingsStore(_write(tmp_path, {"nodes": ["{not json", HY2]}))

    assert [n.tag for n in store.settings.manual_nodes()] == ["home"]
