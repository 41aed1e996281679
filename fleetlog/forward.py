from __future__ import annotations

import json
import logging
import socket
from dataclasses import dataclass, replace
from typing import Any, Protocol, Sequence, Tuple

from .address import AddressResolver
from .errors import DeliveryError
from .rest import to_epoch

DEFAULT_FORWARD_PORT = 24224


@dataclass(frozen=True)
class ForwardServer:
    host: str
    port: int = DEFAULT_FORWARD_PORT

    @property
    def needs_resolution(self) -> bool:
        return self.host.strip() == ""


class ForwardTransport(Protocol):
    """Delivers one emission to a forward-protocol peer.

    The transport owns its wire format; fleetlog only hands it resolved
    destinations.
    """

    def send(self, servers: Sequence[ForwardServer], tag: str, entries: Sequence[Tuple[Any, Any]]) -> None: ...


def resolve_servers(
    servers: Sequence[ForwardServer],
    resolver: AddressResolver,
    *,
    logger: logging.Logger | None = None,
) -> Tuple[ForwardServer, ...]:
    """Fill blank server hosts with the discovered address.

    The resolver runs at most once, and only when a blank host exists.
    """

    log = logger or logging.getLogger("fleetlog.forward")
    resolved_host: str | None = None
    out = []
    for server in servers:
        if server.needs_resolution:
            if resolved_host is None:
                resolved_host = resolver.resolve()
            server = replace(server, host=resolved_host)
            log.info(
                "Forwarding host was resolved to %s",
                resolved_host,
                extra={"fields": {"host": resolved_host, "port": server.port}},
            )
        out.append(server)
    return tuple(out)


class TcpJsonForwardTransport:
    """Forward-protocol messages in JSON mode over TCP.

    Each emission becomes one Forward-mode message ``[tag, [[time, record], ...]]``,
    which fluentd's in_forward accepts as JSON. Servers are tried in order.
    """

    def __init__(self, *, timeout_s: float = 10.0, logger: logging.Logger | None = None) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")
        self.timeout_s = float(timeout_s)
        self._log = logger or logging.getLogger("fleetlog.forward")

    def send(self, servers: Sequence[ForwardServer], tag: str, entries: Sequence[Tuple[Any, Any]]) -> None:
        if not servers:
            raise DeliveryError("no forward servers configured")
        payload = encode_forward_message(tag, entries)
        if payload is None:
            return

        last_exc: OSError | None = None
        for server in servers:
            try:
                conn = socket.create_connection((server.host, server.port), timeout=self.timeout_s)
            except OSError as exc:
                self._log.warning(
                    "forward server unreachable",
                    extra={"fields": {"host": server.host, "port": server.port, "error": repr(exc)}},
                )
                last_exc = exc
                continue
            try:
                conn.sendall(payload)
                return
            except OSError as exc:
                last_exc = exc
                self._log.warning(
                    "forward send failed",
                    extra={"fields": {"host": server.host, "port": server.port, "error": repr(exc)}},
                )
            finally:
                conn.close()

        raise DeliveryError(f"forward delivery failed for all servers: {last_exc!r}") from last_exc


def encode_forward_message(tag: str, entries: Sequence[Tuple[Any, Any]]) -> bytes | None:
    """Encode a Forward-mode message, or None when no record survives."""

    events = [[to_epoch(time), record] for time, record in entries if record is not None]
    if not events:
        return None
    try:
        return json.dumps([tag, events], separators=(",", ":"), ensure_ascii=False).encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise DeliveryError(f"emission for {tag!r} is not JSON-serialisable: {exc}") from exc
