from __future__ import annotations

from typing import Any, MutableMapping

from .identity import DeviceIdentity


def inject_device_source(record: MutableMapping[str, Any], identity: DeviceIdentity) -> MutableMapping[str, Any]:
    """Stamp ``record`` with ``meta.device_source`` unless it already has one.

    An existing ``meta`` mapping is extended, never replaced. Injecting twice is
    the same as injecting once.
    """

    meta = record.get("meta")
    if meta is None:
        meta = {}
        record["meta"] = meta
    if not isinstance(meta, MutableMapping):
        return record
    if meta.get("device_source") is None:
        meta["device_source"] = identity.as_device_source()
    return record
