from .address import AddressResolver, CommandAddressResolver, StaticAddressResolver, extract_host
from .config import EffectiveConfig, OverrideBlock, assemble_config, load_raw_config, resolve_device_identity
from .dispatcher import DeliveryTarget, ForwardTarget, RestTarget, RoutingDispatcher, build_dispatcher
from .errors import AddressResolutionError, ConfigError, DeliveryError, IdentityError
from .forward import ForwardServer, ForwardTransport, TcpJsonForwardTransport
from .identity import DeviceIdentity, IdentityResolver
from .metadata import inject_device_source
from .rest import ChunkedDeliverer

__all__ = [
    "AddressResolutionError",
    "AddressResolver",
    "ChunkedDeliverer",
    "CommandAddressResolver",
    "ConfigError",
    "DeliveryError",
    "DeliveryTarget",
    "DeviceIdentity",
    "EffectiveConfig",
    "ForwardServer",
    "ForwardTarget",
    "ForwardTransport",
    "IdentityError",
    "IdentityResolver",
    "OverrideBlock",
    "RestTarget",
    "RoutingDispatcher",
    "StaticAddressResolver",
    "TcpJsonForwardTransport",
    "assemble_config",
    "build_dispatcher",
    "extract_host",
    "inject_device_source",
    "load_raw_config",
    "resolve_device_identity",
]
