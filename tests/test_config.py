from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from fleetlog.config import (
    EffectiveConfig,
    OverrideBlock,
    assemble_config,
    load_config_from_env,
    load_raw_config,
    parse_override_blocks,
    resolve_device_identity,
)
from fleetlog.errors import ConfigError, IdentityError
from fleetlog.forward import ForwardServer
from fleetlog.identity import IdentityResolver


class _FakeResolver(IdentityResolver):
    """Serves identity facts from memory and records which ones were read."""

    def __init__(self, facts: dict[str, str], *, image_version: str = "") -> None:
        super().__init__("/nonexistent")
        self.facts = facts
        self.reads: list[str] = []
        self._fake_image_version = image_version

    def _read_fact(self, name: str) -> str:
        self.reads.append(name)
        if name not in self.facts:
            raise IdentityError(f"missing {name}")
        return self.facts[name]

    def image_version(self) -> str:
        return self._fake_image_version


def _laptop_facts() -> dict[str, str]:
    return {
        "hosttype": "laptop",
        "hostname": "lap-01",
        "domain": "school.example.org",
        "ldap/dn": "uid=lap-01,ou=Devices",
        "ldap/password": "s3cret",
    }


def test_laptop_and_bootserver_select_rest_target() -> None:
    for host_type in ("laptop", "bootserver"):
        facts = _laptop_facts()
        facts["hosttype"] = host_type
        config = assemble_config({}, _FakeResolver(facts))
        assert config.target_kind == "rest"
        assert config.ldap_dn == "uid=lap-01,ou=Devices"
        assert config.ldap_password == "s3cret"


@pytest.mark.parametrize("host_type", ["fatclient", "thinclient", "wirelessaccesspoint", "Laptop"])
def test_other_host_types_select_forward_target(host_type: str) -> None:
    resolver = _FakeResolver({"hosttype": host_type, "hostname": "h", "domain": "d"})
    config = assemble_config({}, resolver)

    assert config.target_kind == "forward"
    assert config.ldap_dn is None
    assert "ldap/dn" not in resolver.reads


def test_defaults_applied() -> None:
    config = assemble_config({}, _FakeResolver(_laptop_facts()))

    assert config.rest_host == "api.opinsys.fi"
    assert config.rest_port == 443
    assert config.max_records == 20
    assert config.forward_servers == (ForwardServer(host="", port=24224),)
    assert config.overrides_applied == ()


def test_explicit_values_win_and_skip_identity_reads() -> None:
    resolver = _FakeResolver({})
    raw = {
        "host_type": "bootserver",
        "hostname": "boot-01",
        "domain": "school.example.org",
        "ldap_dn": "uid=boot-01",
        "ldap_password": "pw",
    }
    config = assemble_config(raw, resolver)

    assert config.hostname == "boot-01"
    assert config.target_kind == "rest"
    assert resolver.reads == []


def test_missing_fact_without_default_aborts_configuration() -> None:
    resolver = _FakeResolver({"hosttype": "laptop", "hostname": "lap-01", "domain": "d"})
    with pytest.raises(ConfigError):
        assemble_config({}, resolver)


def test_assemble_does_not_mutate_input() -> None:
    raw: dict[str, Any] = {"device": [{"roles": "laptop", "settings": {"max_records": 5}}]}
    before = {"device": [{"roles": "laptop", "settings": {"max_records": 5}}]}
    assemble_config(raw, _FakeResolver(_laptop_facts()))
    assert raw == before


def test_later_matching_override_block_wins() -> None:
    raw = {
        "max_records": 10,
        "device": [
            {"roles": "laptop|bootserver", "settings": {"max_records": 30, "rest_host": "a.example.org"}},
            {"roles": "fatclient", "settings": {"max_records": 99}},
            {"roles": "bootserver|laptop", "settings": {"rest_host": "b.example.org"}},
        ],
    }
    config = assemble_config(raw, _FakeResolver(_laptop_facts()))

    assert config.max_records == 30
    assert config.rest_host == "b.example.org"
    assert config.overrides_applied == ("laptop|bootserver", "bootserver|laptop")


def test_override_beats_identity_defaults() -> None:
    raw = {"device": [{"roles": "laptop", "settings": {"hostname": "renamed", "ldap_password": "rotated"}}]}
    config = assemble_config(raw, _FakeResolver(_laptop_facts()))

    assert config.hostname == "renamed"
    assert config.ldap_password == "rotated"


def test_override_does_not_change_chosen_target() -> None:
    raw = {"device": [{"roles": "laptop", "settings": {"host_type": "fatclient"}}]}
    config = assemble_config(raw, _FakeResolver(_laptop_facts()))

    assert config.host_type == "fatclient"
    assert config.target_kind == "rest"


def test_role_tag_must_match_exactly_after_split() -> None:
    block = OverrideBlock(roles="laptop|bootserver")
    assert block.matches("laptop")
    assert block.matches("bootserver")
    assert not block.matches("lap")
    assert not block.matches("laptop|bootserver")


def test_unknown_keys_are_kept_as_extra() -> None:
    raw = {"flush_interval": "10s", "device": [{"roles": "laptop", "settings": {"flush_interval": "60s"}}]}
    config = assemble_config(raw, _FakeResolver(_laptop_facts()))
    assert config.extra == {"flush_interval": "60s"}


@pytest.mark.parametrize("value", [0, -1, "zero", True])
def test_invalid_max_records_rejected(value: object) -> None:
    with pytest.raises(ConfigError):
        assemble_config({"max_records": value}, _FakeResolver(_laptop_facts()))


def test_numeric_strings_are_coerced() -> None:
    config = assemble_config({"max_records": "5", "rest_port": "8080"}, _FakeResolver(_laptop_facts()))
    assert config.max_records == 5
    assert config.rest_port == 8080


def test_rest_target_requires_non_empty_credentials() -> None:
    raw = {"device": [{"roles": "laptop", "settings": {"ldap_password": ""}}]}
    with pytest.raises(ConfigError):
        assemble_config(raw, _FakeResolver(_laptop_facts()))


def test_forward_servers_parsed() -> None:
    raw = {"forward": {"servers": [{"host": ""}, {"host": "static.example.org", "port": 24225}]}}
    config = assemble_config(raw, _FakeResolver({"hosttype": "fatclient", "hostname": "h", "domain": "d"}))

    assert config.forward_servers == (
        ForwardServer(host="", port=24224),
        ForwardServer(host="static.example.org", port=24225),
    )


@pytest.mark.parametrize(
    "raw",
    [
        {"device": {"roles": "laptop"}},
        {"device": [{"roles": ""}]},
        {"device": [{"roles": "laptop", "settings": ["x"]}]},
    ],
)
def test_malformed_override_blocks_rejected(raw: dict[str, Any]) -> None:
    with pytest.raises(ConfigError):
        parse_override_blocks(raw["device"])


def test_resolve_device_identity_uses_effective_values() -> None:
    config = EffectiveConfig(host_type="laptop", hostname="lap-01", domain="example.org", target_kind="rest")
    identity = resolve_device_identity(config, _FakeResolver({}, image_version="img-1"))

    assert identity.as_device_source() == {
        "host_type": "laptop",
        "hostname": "lap-01",
        "organisation_domain": "example.org",
        "image_version": "img-1",
    }


def test_load_raw_config_reads_yaml(tmp_path: Path) -> None:
    path = tmp_path / "fleetlog.yaml"
    path.write_text(
        "host_type: laptop\nmax_records: 20\ndevice:\n  - roles: laptop|bootserver\n    settings:\n      max_records: 5\n",
        encoding="utf-8",
    )
    raw = load_raw_config(path)

    assert raw["host_type"] == "laptop"
    assert raw["device"] == [{"roles": "laptop|bootserver", "settings": {"max_records": 5}}]


def test_load_raw_config_errors(tmp_path: Path) -> None:
    with pytest.raises(ConfigError):
        load_raw_config(tmp_path / "missing.yaml")

    bad = tmp_path / "bad.yaml"
    bad.write_text("- just\n- a list\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_raw_config(bad)

    empty = tmp_path / "empty.yaml"
    empty.write_text("", encoding="utf-8")
    assert load_raw_config(empty) == {}


def test_load_config_from_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.delenv("FLEETLOG_CONFIG_PATH", raising=False)
    assert load_config_from_env() == {}

    path = tmp_path / "fleetlog.yaml"
    path.write_text("rest_port: 8080\n", encoding="utf-8")
    monkeypatch.setenv("FLEETLOG_CONFIG_PATH", str(path))
    assert load_config_from_env() == {"rest_port": 8080}
