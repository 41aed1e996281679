from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Dict

from .errors import IdentityError

DEFAULT_IDENTITY_DIR = "/etc/puavo"
DEFAULT_IMAGE_NAME_PATH = "/etc/ltsp/this_ltspimage_name"


@dataclass(frozen=True)
class DeviceIdentity:
    host_type: str
    hostname: str
    organisation_domain: str
    image_version: str = ""

    def as_device_source(self) -> Dict[str, str]:
        return {
            "host_type": self.host_type,
            "hostname": self.hostname,
            "organisation_domain": self.organisation_domain,
            "image_version": self.image_version,
        }


class IdentityResolver:
    """Reads machine identity facts from the local identity directory.

    Each fact is read on first use and cached, so facts that are supplied by
    explicit configuration never touch the filesystem.
    """

    def __init__(
        self,
        root: str | Path = DEFAULT_IDENTITY_DIR,
        *,
        image_name_path: str | Path = DEFAULT_IMAGE_NAME_PATH,
    ) -> None:
        self.root = Path(root)
        self.image_name_path = Path(image_name_path)
        self._cache: Dict[str, str] = {}
        self._image_version: str | None = None

    def host_type(self) -> str:
        return self._read_fact("hosttype")

    def hostname(self) -> str:
        return self._read_fact("hostname")

    def domain(self) -> str:
        return self._read_fact("domain")

    def ldap_dn(self) -> str:
        return self._read_fact("ldap/dn")

    def ldap_password(self) -> str:
        return self._read_fact("ldap/password")

    def image_version(self) -> str:
        # The only fact allowed to be missing.
        if self._image_version is None:
            try:
                self._image_version = self.image_name_path.read_text(encoding="utf-8").strip()
            except FileNotFoundError:
                self._image_version = ""
        return self._image_version

    def resolve(self) -> DeviceIdentity:
        return DeviceIdentity(
            host_type=self.host_type(),
            hostname=self.hostname(),
            organisation_domain=self.domain(),
            image_version=self.image_version(),
        )

    def _read_fact(self, name: str) -> str:
        cached = self._cache.get(name)
        if cached is not None:
            return cached
        path = self.root / name
        try:
            value = path.read_text(encoding="utf-8").strip()
        except OSError as exc:
            raise IdentityError(f"cannot read identity fact '{name}' from {path}: {exc}") from exc
        self._cache[name] = value
        return value
