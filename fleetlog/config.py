from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Literal, Mapping, Tuple

import yaml

from .errors import ConfigError
from .forward import DEFAULT_FORWARD_PORT, ForwardServer
from .identity import DeviceIdentity, IdentityResolver

TargetKind = Literal["rest", "forward"]

REST_HOST_TYPES = frozenset({"laptop", "bootserver"})

DEFAULT_REST_HOST = "api.opinsys.fi"
DEFAULT_REST_PORT = 443
# max json records to send in a single http post
DEFAULT_MAX_RECORDS = 20

_KNOWN_KEYS = {
    "host_type",
    "hostname",
    "domain",
    "ldap_dn",
    "ldap_password",
    "rest_host",
    "rest_port",
    "max_records",
    "forward",
    "device",
}


@dataclass(frozen=True)
class OverrideBlock:
    """Settings applied only on machines whose host type is listed in ``roles``."""

    roles: str
    settings: Mapping[str, Any] = field(default_factory=dict)

    def matches(self, host_type: str) -> bool:
        return host_type in self.roles.split("|")


@dataclass(frozen=True)
class EffectiveConfig:
    host_type: str
    hostname: str
    domain: str
    target_kind: TargetKind
    ldap_dn: str | None = None
    ldap_password: str | None = None
    rest_host: str = DEFAULT_REST_HOST
    rest_port: int = DEFAULT_REST_PORT
    max_records: int = DEFAULT_MAX_RECORDS
    forward_servers: Tuple[ForwardServer, ...] = (ForwardServer(host=""),)
    extra: Mapping[str, Any] = field(default_factory=dict)
    overrides_applied: Tuple[str, ...] = ()


def load_raw_config(path: str | Path) -> Dict[str, Any]:
    p = Path(path).expanduser()
    if not p.exists():
        raise ConfigError(f"config file does not exist: {p}")
    try:
        loaded = yaml.safe_load(p.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"failed to parse config at {p}: {exc}") from exc
    if loaded is None:
        return {}
    if not isinstance(loaded, dict):
        raise ConfigError(f"config at {p} must be a YAML object")
    return dict(loaded)


def load_config_from_env() -> Dict[str, Any]:
    config_path = os.getenv("FLEETLOG_CONFIG_PATH")
    if not config_path:
        return {}
    return load_raw_config(config_path)


def parse_override_blocks(raw: Any, *, origin: str = "config") -> Tuple[OverrideBlock, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError(f"{origin}: 'device' must be a list of override blocks")
    blocks: List[OverrideBlock] = []
    for idx, item in enumerate(raw):
        if not isinstance(item, dict):
            raise ConfigError(f"{origin}: device[{idx}] must be an object")
        roles = item.get("roles")
        if not isinstance(roles, str) or not roles.strip():
            raise ConfigError(f"{origin}: device[{idx}].roles must be a non-empty string")
        settings = item.get("settings") or {}
        if not isinstance(settings, dict):
            raise ConfigError(f"{origin}: device[{idx}].settings must be an object")
        blocks.append(OverrideBlock(roles=roles.strip(), settings=dict(settings)))
    return tuple(blocks)


def assemble_config(
    raw: Mapping[str, Any],
    resolver: IdentityResolver,
    *,
    logger: logging.Logger | None = None,
) -> EffectiveConfig:
    """Merge explicit config, identity defaults and matching override blocks.

    ``raw`` is never mutated. Identity facts are read only for keys the
    explicit config leaves out.
    """

    log = logger or logging.getLogger("fleetlog.config")
    merged: Dict[str, Any] = {k: v for k, v in raw.items() if k != "device"}

    if _absent(merged, "host_type"):
        merged["host_type"] = resolver.host_type()
    if _absent(merged, "hostname"):
        merged["hostname"] = resolver.hostname()
    if _absent(merged, "domain"):
        merged["domain"] = resolver.domain()

    host_type = str(merged["host_type"])
    target_kind: TargetKind
    if host_type in REST_HOST_TYPES:
        if _absent(merged, "ldap_dn"):
            merged["ldap_dn"] = resolver.ldap_dn()
        if _absent(merged, "ldap_password"):
            merged["ldap_password"] = resolver.ldap_password()
        target_kind = "rest"
    else:
        target_kind = "forward"

    log.info(
        "I'm a %s so I'm using %s",
        host_type,
        "RestTarget" if target_kind == "rest" else "ForwardTarget",
        extra={"fields": {"host_type": host_type, "target": target_kind}},
    )

    applied: List[str] = []
    for block in parse_override_blocks(raw.get("device")):
        if not block.matches(host_type):
            continue
        for key, value in block.settings.items():
            merged[key] = value
        applied.append(block.roles)

    config = _build_effective(merged, target_kind=target_kind, applied=tuple(applied))

    if "flush_interval" in config.extra:
        log.info("flush_interval is %s", config.extra["flush_interval"])
    return config


def resolve_device_identity(config: EffectiveConfig, resolver: IdentityResolver) -> DeviceIdentity:
    """Snapshot of the identity stamped onto every outgoing record."""

    return DeviceIdentity(
        host_type=config.host_type,
        hostname=config.hostname,
        organisation_domain=config.domain,
        image_version=resolver.image_version(),
    )


def _absent(merged: Mapping[str, Any], key: str) -> bool:
    return merged.get(key) is None


def _build_effective(
    merged: Mapping[str, Any],
    *,
    target_kind: TargetKind,
    applied: Tuple[str, ...],
) -> EffectiveConfig:
    ldap_dn = _optional_str(merged, "ldap_dn")
    ldap_password = _optional_str(merged, "ldap_password")
    if target_kind == "rest" and (not ldap_dn or not ldap_password):
        raise ConfigError("ldap_dn and ldap_password must be non-empty for the REST target")

    rest_host = _optional_str(merged, "rest_host") or DEFAULT_REST_HOST
    rest_port = _int_setting(merged, "rest_port", default=DEFAULT_REST_PORT)
    if not 1 <= rest_port <= 65535:
        raise ConfigError(f"rest_port must be between 1 and 65535, got {rest_port}")

    max_records = _int_setting(merged, "max_records", default=DEFAULT_MAX_RECORDS)
    if max_records < 1:
        raise ConfigError(f"max_records must be >= 1, got {max_records}")

    extra = {k: v for k, v in merged.items() if k not in _KNOWN_KEYS}

    return EffectiveConfig(
        host_type=str(merged["host_type"]).strip(),
        hostname=str(merged["hostname"]).strip(),
        domain=str(merged["domain"]).strip(),
        target_kind=target_kind,
        ldap_dn=ldap_dn,
        ldap_password=ldap_password,
        rest_host=rest_host,
        rest_port=rest_port,
        max_records=max_records,
        forward_servers=_parse_forward_servers(merged.get("forward")),
        extra=MappingProxyType(extra),
        overrides_applied=applied,
    )


def _optional_str(merged: Mapping[str, Any], key: str) -> str | None:
    v = merged.get(key)
    if v is None:
        return None
    vv = str(v).strip()
    return vv or None


def _int_setting(merged: Mapping[str, Any], key: str, *, default: int) -> int:
    v = merged.get(key)
    if v is None or (isinstance(v, str) and v.strip() == ""):
        return default
    if isinstance(v, bool):
        raise ConfigError(f"'{key}' must be an integer")
    try:
        return int(str(v).strip()) if isinstance(v, str) else int(v)
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"'{key}' must be an integer, got {v!r}") from exc


def _parse_forward_servers(raw: Any) -> Tuple[ForwardServer, ...]:
    if raw is None:
        return (ForwardServer(host=""),)
    if not isinstance(raw, dict):
        raise ConfigError("'forward' must be an object")
    servers_raw = raw.get("servers")
    if servers_raw is None:
        return (ForwardServer(host=""),)
    if not isinstance(servers_raw, list) or not servers_raw:
        raise ConfigError("forward.servers must be a non-empty list")

    servers: List[ForwardServer] = []
    for idx, item in enumerate(servers_raw):
        if not isinstance(item, dict):
            raise ConfigError(f"forward.servers[{idx}] must be an object")
        host = item.get("host")
        port = _int_setting(item, "port", default=DEFAULT_FORWARD_PORT)
        if not 1 <= port <= 65535:
            raise ConfigError(f"forward.servers[{idx}].port must be between 1 and 65535")
        servers.append(ForwardServer(host="" if host is None else str(host).strip(), port=port))
    return tuple(servers)
