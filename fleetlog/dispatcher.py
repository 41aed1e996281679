from __future__ import annotations

import logging
from typing import Any, Iterable, List, Protocol, Sequence, Tuple

from .address import AddressResolver, CommandAddressResolver
from .config import EffectiveConfig
from .errors import ConfigError
from .forward import ForwardServer, ForwardTransport, TcpJsonForwardTransport, resolve_servers
from .identity import DeviceIdentity
from .metadata import inject_device_source
from .rest import ChunkedDeliverer, HTTPSession

Entry = Tuple[Any, Any]


class DeliveryTarget(Protocol):
    """One of the two delivery paths; chosen once at configuration time."""

    def dispatch(self, tag: str, entries: Sequence[Entry]) -> None: ...


class RestTarget:
    def __init__(self, deliverer: ChunkedDeliverer) -> None:
        self.deliverer = deliverer

    def dispatch(self, tag: str, entries: Sequence[Entry]) -> None:
        self.deliverer.write((tag, time, record) for time, record in entries)


class ForwardTarget:
    """Hands emissions to a forward transport once server hosts are known.

    Blank server hosts are resolved on first use, or eagerly via prepare().
    """

    def __init__(
        self,
        servers: Sequence[ForwardServer],
        *,
        address_resolver: AddressResolver,
        transport: ForwardTransport,
        logger: logging.Logger | None = None,
    ) -> None:
        if not servers:
            raise ValueError("at least one forward server is required")
        self._configured = tuple(servers)
        self._resolved: Tuple[ForwardServer, ...] | None = None
        self.address_resolver = address_resolver
        self.transport = transport
        self._log = logger or logging.getLogger("fleetlog.forward")

    @property
    def servers(self) -> Tuple[ForwardServer, ...]:
        return self.prepare()

    def prepare(self) -> Tuple[ForwardServer, ...]:
        if self._resolved is None:
            self._resolved = resolve_servers(self._configured, self.address_resolver, logger=self._log)
        return self._resolved

    def dispatch(self, tag: str, entries: Sequence[Entry]) -> None:
        self.transport.send(self.prepare(), tag, entries)


class RoutingDispatcher:
    """Stamps device identity onto each record and routes the emission."""

    def __init__(
        self,
        target: DeliveryTarget,
        identity: DeviceIdentity,
        *,
        logger: logging.Logger | None = None,
    ) -> None:
        self.target = target
        self.identity = identity
        self._log = logger or logging.getLogger("fleetlog.dispatch")

    def emit(self, tag: str, entries: Iterable[Entry]) -> None:
        emission: List[Entry] = list(entries)
        for _, record in emission:
            self._log.debug("record: %s: %r", tag, record)
            if record is not None:
                inject_device_source(record, self.identity)
        self.target.dispatch(tag, emission)


def build_target(
    config: EffectiveConfig,
    *,
    session: HTTPSession | None = None,
    address_resolver: AddressResolver | None = None,
    transport: ForwardTransport | None = None,
    logger: logging.Logger | None = None,
) -> DeliveryTarget:
    if config.target_kind == "rest":
        if not config.ldap_dn or not config.ldap_password:
            raise ConfigError("ldap_dn and ldap_password must be non-empty for the REST target")
        return RestTarget(
            ChunkedDeliverer(
                host=config.rest_host,
                port=config.rest_port,
                dn=config.ldap_dn,
                password=config.ldap_password,
                max_records=config.max_records,
                session=session,
                logger=logger,
            )
        )
    return ForwardTarget(
        config.forward_servers,
        address_resolver=address_resolver or CommandAddressResolver(logger=logger),
        transport=transport or TcpJsonForwardTransport(logger=logger),
        logger=logger,
    )


def build_dispatcher(
    config: EffectiveConfig,
    identity: DeviceIdentity,
    *,
    session: HTTPSession | None = None,
    address_resolver: AddressResolver | None = None,
    transport: ForwardTransport | None = None,
    logger: logging.Logger | None = None,
) -> RoutingDispatcher:
    target = build_target(
        config,
        session=session,
        address_resolver=address_resolver,
        transport=transport,
        logger=logger,
    )
    return RoutingDispatcher(target, identity, logger=logger)
