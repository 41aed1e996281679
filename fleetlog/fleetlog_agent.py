from __future__ import annotations

import argparse
import json
import logging
import os
import shlex
import sys
import time
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional, Sequence, TextIO, Tuple

from dotenv import load_dotenv

from .address import DEFAULT_RESOLVE_COMMAND, CommandAddressResolver
from .config import assemble_config, load_config_from_env, load_raw_config, resolve_device_identity
from .dispatcher import ForwardTarget, RoutingDispatcher, build_dispatcher
from .errors import ConfigError, DeliveryError
from .identity import DEFAULT_IDENTITY_DIR, DEFAULT_IMAGE_NAME_PATH, IdentityResolver
from .observability import configure_logging, parse_log_level

log = logging.getLogger("fleetlog.agent")

DEFAULT_TAG = "fleetlog"
# An input object made only of these keys, with a mapping "record", is an envelope.
ENVELOPE_KEYS = frozenset({"tag", "time", "record"})


def _parse_positive_int_env(name: str, *, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0")
    return value


def _parse_positive_float_env(name: str, *, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw.strip())
    except ValueError as exc:
        raise ConfigError(f"{name} must be a number") from exc
    if value <= 0:
        raise ConfigError(f"{name} must be > 0")
    return value


def parse_input_line(
    line: str,
    *,
    default_tag: str,
    now_fn: Callable[[], float] = time.time,
) -> Optional[Tuple[str, Any, Dict[str, Any]]]:
    """Parse one JSON line into ``(tag, time, record)``.

    Lines shaped like ``{"tag": ..., "time": ..., "record": {...}}`` keep their
    tag and time when they carry no other keys; any other JSON object is the
    record itself.
    Blank lines yield None.
    """

    raw = line.strip()
    if not raw:
        return None
    obj = json.loads(raw)
    if not isinstance(obj, dict):
        raise ValueError("input line is not a JSON object")

    record = obj.get("record")
    if isinstance(record, dict) and set(obj) <= ENVELOPE_KEYS:
        tag = obj.get("tag") or default_tag
        ts = obj.get("time")
        return str(tag), int(now_fn()) if ts is None else ts, record
    return default_tag, int(now_fn()), obj


def iter_emissions(
    lines: Iterable[str],
    *,
    default_tag: str,
    chunk_size: int,
    now_fn: Callable[[], float] = time.time,
) -> Iterator[Tuple[str, List[Tuple[Any, Dict[str, Any]]]]]:
    """Group consecutive same-tag records into emissions of at most chunk_size."""

    tag: str | None = None
    entries: List[Tuple[Any, Dict[str, Any]]] = []
    for lineno, line in enumerate(lines, start=1):
        try:
            parsed = parse_input_line(line, default_tag=default_tag, now_fn=now_fn)
        except ValueError as exc:
            log.warning("skipping invalid input line", extra={"fields": {"line": lineno, "error": str(exc)}})
            continue
        if parsed is None:
            continue
        line_tag, ts, record = parsed
        if entries and (line_tag != tag or len(entries) >= chunk_size):
            yield tag or default_tag, entries
            entries = []
        tag = line_tag
        entries.append((ts, record))
    if entries:
        yield tag or default_tag, entries


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Route fleet telemetry records to the collection endpoint")
    parser.add_argument(
        "--config",
        default=os.getenv("FLEETLOG_CONFIG_PATH"),
        help="YAML config file (default: FLEETLOG_CONFIG_PATH)",
    )
    parser.add_argument(
        "--input",
        default="-",
        help="JSON-lines record file, '-' for stdin",
    )
    parser.add_argument("--tag", default=os.getenv("FLEETLOG_TAG", DEFAULT_TAG), help="Tag for untagged records")
    parser.add_argument(
        "--identity-dir",
        default=os.getenv("FLEETLOG_IDENTITY_DIR", DEFAULT_IDENTITY_DIR),
        help="Directory holding hosttype/hostname/domain/ldap facts",
    )
    parser.add_argument(
        "--image-name-path",
        default=os.getenv("FLEETLOG_IMAGE_NAME_PATH", DEFAULT_IMAGE_NAME_PATH),
        help="File holding the installed image name",
    )
    parser.add_argument(
        "--resolve-command",
        default=os.getenv("FLEETLOG_RESOLVE_COMMAND", " ".join(DEFAULT_RESOLVE_COMMAND)),
        help="Command printing the API server URI when no forward host is configured",
    )
    parser.add_argument(
        "--check",
        action="store_true",
        help="Assemble the configuration, resolve the forward address and exit",
    )
    parser.add_argument("--log-level", default=os.getenv("LOG_LEVEL", "INFO"))
    parser.add_argument("--log-format", default=os.getenv("LOG_FORMAT", "text"), choices=("text", "json"))
    return parser


def build_runtime(args: argparse.Namespace) -> RoutingDispatcher:
    resolver = IdentityResolver(args.identity_dir, image_name_path=args.image_name_path)
    raw = load_raw_config(args.config) if args.config else load_config_from_env()
    config = assemble_config(raw, resolver)
    identity = resolve_device_identity(config, resolver)

    command = shlex.split(args.resolve_command)
    address_resolver = CommandAddressResolver(
        command,
        timeout_s=_parse_positive_float_env("FLEETLOG_RESOLVE_TIMEOUT_S", default=30.0),
    )
    dispatcher = build_dispatcher(config, identity, address_resolver=address_resolver)

    # Resolution failures must stop startup, not the first send.
    if isinstance(dispatcher.target, ForwardTarget):
        dispatcher.target.prepare()

    log.info(
        "fleetlog ready",
        extra={
            "fields": {
                "host_type": config.host_type,
                "hostname": config.hostname,
                "domain": config.domain,
                "target": config.target_kind,
                "overrides": list(config.overrides_applied),
            }
        },
    )
    return dispatcher


def run(dispatcher: RoutingDispatcher, stream: TextIO, *, default_tag: str, chunk_size: int) -> int:
    sent = 0
    for tag, entries in iter_emissions(stream, default_tag=default_tag, chunk_size=chunk_size):
        dispatcher.emit(tag, entries)
        sent += len(entries)
    return sent


def main(argv: Sequence[str] | None = None) -> int:
    # Load repo-level .env (if present), then package-local overrides.
    load_dotenv()
    load_dotenv(Path(__file__).resolve().parent / ".env")

    args = build_arg_parser().parse_args(argv)

    try:
        level = parse_log_level(args.log_level)
    except ValueError as exc:
        raise SystemExit(f"[fleetlog] invalid LOG_LEVEL: {exc}") from exc
    configure_logging(level=level, log_format=args.log_format)

    try:
        chunk_size = _parse_positive_int_env("FLEETLOG_EMIT_CHUNK", default=100)
        dispatcher = build_runtime(args)
    except ConfigError as exc:
        raise SystemExit(f"[fleetlog] invalid configuration: {exc}") from exc

    if args.check:
        return 0

    try:
        if args.input == "-":
            sent = run(dispatcher, sys.stdin, default_tag=args.tag, chunk_size=chunk_size)
        else:
            with open(args.input, "r", encoding="utf-8") as fh:
                sent = run(dispatcher, fh, default_tag=args.tag, chunk_size=chunk_size)
    except DeliveryError as exc:
        raise SystemExit(f"[fleetlog] delivery failed: {exc}") from exc

    log.info("fleetlog complete", extra={"fields": {"records": sent}})
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
