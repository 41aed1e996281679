from __future__ import annotations

import logging
import subprocess
from dataclasses import dataclass
from typing import Callable, Protocol, Sequence
from urllib.parse import urlsplit

from .errors import AddressResolutionError

DEFAULT_RESOLVE_COMMAND = ("puavo-resolve-api-server",)


@dataclass(frozen=True)
class CommandResult:
    returncode: int
    stdout: str
    stderr: str = ""


CommandRunner = Callable[[Sequence[str], float], CommandResult]


class AddressResolver(Protocol):
    """Produces the hostname of the default forwarding destination."""

    def resolve(self) -> str: ...


class StaticAddressResolver:
    def __init__(self, host: str) -> None:
        self.host = host

    def resolve(self) -> str:
        host = self.host.strip()
        if not host:
            raise AddressResolutionError("static forwarding host is empty")
        return host


class CommandAddressResolver:
    """Runs the API server discovery command and extracts the host of its URI."""

    def __init__(
        self,
        command: Sequence[str] = DEFAULT_RESOLVE_COMMAND,
        *,
        timeout_s: float = 30.0,
        command_runner: CommandRunner | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        if not command:
            raise AddressResolutionError("discovery command must be non-empty")
        self.command = tuple(command)
        self.timeout_s = float(timeout_s)
        self._command_runner = command_runner or _run_command
        self._log = logger or logging.getLogger("fleetlog.address")

    def resolve(self) -> str:
        name = self.command[0]
        try:
            result = self._command_runner(self.command, self.timeout_s)
        except FileNotFoundError as exc:
            raise AddressResolutionError(f"Failed to execute {name}: command not found") from exc
        except subprocess.TimeoutExpired as exc:
            raise AddressResolutionError(f"Failed to execute {name}: timed out after {self.timeout_s:.0f}s") from exc
        except OSError as exc:
            raise AddressResolutionError(f"Failed to execute {name}: {exc.strerror or exc}") from exc

        if result.returncode != 0:
            stderr = (result.stderr or "").strip()
            detail = f": {stderr[:200]}" if stderr else ""
            raise AddressResolutionError(
                f"Failed to execute {name} (exit status {result.returncode}){detail}",
                exit_status=result.returncode,
            )

        try:
            host = extract_host(result.stdout)
        except AddressResolutionError as exc:
            raise AddressResolutionError(f"Empty response from {name}: {exc}", exit_status=0) from exc

        self._log.info("forwarding host resolved", extra={"fields": {"host": host, "command": name}})
        return host


def extract_host(uri: str) -> str:
    """Return the host component of a URI-shaped string."""

    raw = (uri or "").strip()
    if not raw:
        raise AddressResolutionError("discovery output is empty")
    try:
        host = urlsplit(raw).hostname
    except ValueError as exc:
        raise AddressResolutionError(f"discovery output is not a URI: {raw[:200]!r}") from exc
    host = (host or "").strip()
    if not host:
        raise AddressResolutionError(f"discovery output has no host: {raw[:200]!r}")
    return host


def _run_command(command: Sequence[str], timeout_s: float) -> CommandResult:
    proc = subprocess.run(
        list(command),
        check=False,
        capture_output=True,
        text=True,
        timeout=max(0.1, float(timeout_s)),
    )
    return CommandResult(returncode=proc.returncode, stdout=proc.stdout, stderr=proc.stderr)
