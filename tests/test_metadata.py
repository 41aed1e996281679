from __future__ import annotations

import copy

from fleetlog.identity import DeviceIdentity
from fleetlog.metadata import inject_device_source

IDENTITY = DeviceIdentity(
    host_type="laptop",
    hostname="lap-01",
    organisation_domain="school.example.org",
    image_version="focal-2026-10-01",
)


def test_injects_device_source_into_bare_record() -> None:
    record = {"message": "hello"}
    inject_device_source(record, IDENTITY)

    assert record == {
        "message": "hello",
        "meta": {
            "device_source": {
                "host_type": "laptop",
                "hostname": "lap-01",
                "organisation_domain": "school.example.org",
                "image_version": "focal-2026-10-01",
            }
        },
    }


def test_existing_meta_is_extended_not_replaced() -> None:
    record = {"meta": {"type": "wlan", "seq": 4}}
    inject_device_source(record, IDENTITY)

    assert record["meta"]["type"] == "wlan"
    assert record["meta"]["seq"] == 4
    assert record["meta"]["device_source"]["hostname"] == "lap-01"


def test_existing_device_source_is_never_altered() -> None:
    original = {"host_type": "bootserver", "hostname": "boot-01"}
    record = {"meta": {"device_source": original}}
    inject_device_source(record, IDENTITY)

    assert record["meta"]["device_source"] is original
    assert record["meta"]["device_source"] == {"host_type": "bootserver", "hostname": "boot-01"}


def test_injection_is_idempotent() -> None:
    once = {"message": "x"}
    inject_device_source(once, IDENTITY)
    twice = copy.deepcopy(once)
    inject_device_source(twice, IDENTITY)

    assert twice == once


def test_non_mapping_meta_is_left_alone() -> None:
    record = {"meta": "opaque", "message": "x"}
    inject_device_source(record, IDENTITY)
    assert record == {"meta": "opaque", "message": "x"}
