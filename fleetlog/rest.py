from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Protocol, Tuple

import requests

from .errors import DeliveryError

FLUENT_PATH = "/v3/fluent"
# Bad-response bodies are truncated to this many characters.
MAX_ERROR_BODY_CHARS = 500
# (connect, read) in seconds.
DEFAULT_TIMEOUT: Tuple[float, float] = (60.0, 300.0)


class HTTPSession(Protocol):
    def post(
        self,
        url: str,
        *,
        data: bytes,
        headers: Mapping[str, str],
        auth: Tuple[str, str],
        timeout: Any,
    ) -> Any: ...


def to_epoch(time: Any) -> int:
    """Coerce an event time to integer epoch seconds."""

    if isinstance(time, datetime):
        return int(time.timestamp())
    if isinstance(time, (int, float, str)) and not isinstance(time, bool):
        try:
            return int(float(time))
        except (ValueError, OverflowError) as exc:
            raise DeliveryError(f"event time must be an epoch number, got {time!r}") from exc
    raise DeliveryError(f"event time must be an epoch number, got {time!r}")


def build_batch_item(tag: str, time: Any, record: Mapping[str, Any]) -> Dict[str, Any]:
    item = dict(record)
    item["_tag"] = tag
    item["_time"] = to_epoch(time)
    return item


class ChunkedDeliverer:
    """Posts records to the REST collection endpoint in size-bounded batches.

    Each batch is one authenticated POST. A batch counts as delivered only when
    the server answers with status 200; any other answer raises DeliveryError
    and stops the remaining batches. Batches already posted stay delivered.
    """

    def __init__(
        self,
        *,
        host: str,
        port: int,
        dn: str,
        password: str,
        max_records: int = 20,
        session: HTTPSession | None = None,
        timeout: Any = DEFAULT_TIMEOUT,
        logger: logging.Logger | None = None,
    ) -> None:
        if max_records < 1:
            raise ValueError("max_records must be >= 1")
        if not dn or not password:
            raise ValueError("dn and password must be non-empty")
        self.host = host
        self.port = int(port)
        self.dn = dn
        self.password = password
        self.max_records = int(max_records)
        self.timeout = timeout
        self._session = session if session is not None else requests.Session()
        self._log = logger or logging.getLogger("fleetlog.rest")
        self._log.info("Rest is using %s:%s", self.host, self.port)

    @property
    def url(self) -> str:
        scheme = "https" if self.port == 443 else "http"
        return f"{scheme}://{self.host}:{self.port}{FLUENT_PATH}"

    def write(self, entries: Iterable[Tuple[str, Any, Any]]) -> int:
        """Deliver ``(tag, time, record)`` triples in arrival order.

        Returns the number of POSTs made. An empty remainder is not posted.
        """

        posts = 0
        records: List[Dict[str, Any]] = []
        for tag, time, record in entries:
            if record is None:
                continue
            records.append(build_batch_item(tag, time, record))

            if len(records) >= self.max_records:
                self._log.info("Splitting send. Limiting to %s records only", len(records))
                self.http_write(records)
                posts += 1
                records = []

        if records:
            self.http_write(records)
            posts += 1
        return posts

    def http_write(self, records: List[Dict[str, Any]]) -> None:
        self._log.info(
            "Sending %s records using http to %s:%s%s",
            len(records),
            self.host,
            self.port,
            FLUENT_PATH,
        )
        body = _encode_json(records)
        try:
            resp = self._session.post(
                self.url,
                data=body,
                headers={"Content-Type": "application/json"},
                auth=(self.dn, self.password),
                timeout=self.timeout,
            )
        except requests.RequestException as exc:
            msg = f"HTTP request to {self.host}:{self.port}{FLUENT_PATH} failed: {exc!r}"
            self._log.error(msg)
            raise DeliveryError(msg) from exc

        code = str(resp.status_code)
        if code != "200":
            text = (resp.text or "")[:MAX_ERROR_BODY_CHARS]
            msg = f"Bad HTTP Response {code}: {text}"
            self._log.error(msg, extra={"fields": {"status": code, "records": len(records)}})
            raise DeliveryError(msg, code=code, body=text)

        self._log.info("Sent ok! %s", code, extra={"fields": {"records": len(records)}})


def _encode_json(records: List[Dict[str, Any]]) -> bytes:
    try:
        body = json.dumps(records, separators=(",", ":"), ensure_ascii=False)
    except (TypeError, ValueError) as exc:
        raise DeliveryError(f"batch is not JSON-serialisable: {exc}") from exc
    return body.encode("utf-8")
