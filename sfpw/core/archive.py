"""Reading the support archive returned by the SIF download.

The device packs its syslog, the module database and cached EEPROM images
into a plain (uncompressed) tar file.
"""

from __future__ import annotations

import io
import tarfile
from dataclasses import dataclass

from sfpw.core.errors import ArchiveError

SYSLOG_MEMBER = "syslog"


@dataclass(frozen=True)
class ArchiveMember:
    name: str
    size: int
    data: bytes

    @property
    def is_eeprom(self) -> bool:
        return self.name.endswith(".bin")

    @property
    def module_present(self) -> bool:
        # Empty cages are dumped as erased flash.
        return not (self.data and self.data[0] == 0xFF)

    def format_size(self) -> str:
        if self.size >= 1024:
            return f"{self.size // 1024:3d}KB"
        return f"{self.size:6d}"


def list_members(data: bytes) -> list[ArchiveMember]:
    """Return the regular files in the archive, in archive order."""
    members: list[ArchiveMember] = []
    try:
        with tarfile.open(fileobj=io.BytesIO(data), mode="r:") as tar:
            for info in tar:
                if not info.isfile():
                    continue
                handle = tar.extractfile(info)
                content = handle.read() if handle is not None else b""
                members.append(ArchiveMember(name=info.name, size=info.size, data=content))
    except (tarfile.TarError, EOFError) as exc:
        raise ArchiveError(f"cannot read support archive: {exc}") from exc
    return members


def extract_member(data: bytes, name: str) -> bytes | None:
    for member in list_members(data):
        if member.name == name:
            return member.data
    return None


def extract_syslog(data: bytes) -> bytes | None:
    return extract_member(data, SYSLOG_MEMBER)
