# Copyright 2022-2025 Broadcom.
# SPDX-License-Identifier: Apache-2.0
"""
Detection of the platform facts formulas are allowed to branch on.
"""
from __future__ import annotations

import logging
import os
import platform
import shutil
import struct
import sys
from typing import NamedTuple, Optional

from .common import DARWIN, LINUX, PlatformError, Version, arches, build_arch

log = logging.getLogger(__name__)

# Keychain holding the roots shipped with macOS.
SYSTEM_ROOT_KEYCHAIN = "/System/Library/Keychains/SystemRootCertificates.keychain"

MACOS_CODENAMES = {
    "10.7": "lion",
    "10.8": "mountain_lion",
    "10.9": "mavericks",
    "10.10": "yosemite",
    "10.11": "el_capitan",
    "10.12": "sierra",
    "10.13": "high_sierra",
    "10.14": "mojave",
    "10.15": "catalina",
    "11": "big_sur",
    "12": "monterey",
    "13": "ventura",
    "14": "sonoma",
    "15": "sequoia",
    "26": "tahoe",
}

_ARCH_ALIASES = {
    "amd64": "x86_64",
    "x64": "x86_64",
    "arm64": "arm64",
    "aarch64": "aarch64",
    "i686": "i386",
    "i586": "i386",
    "x86": "i386",
}


class PlatformProfile(NamedTuple):
    """
    Immutable snapshot of the host a formula is being installed on.
    """

    os_family: str
    os_version: str
    kernel: str
    arch: str
    prefer_64_bit: bool = True
    has_system_trust_store: bool = False

    @property
    def is_macos(self) -> bool:
        return self.os_family == DARWIN

    @property
    def is_linux(self) -> bool:
        return self.os_family == LINUX

    @property
    def version_tier(self) -> Version:
        """
        The OS version tier used for comparisons, e.g. ``10.13`` or ``14``.
        """
        if self.is_macos:
            return Version(self.os_version)
        return Version(self.kernel)

    @property
    def codename(self) -> Optional[str]:
        """
        The macOS marketing codename, ``None`` on other platforms.
        """
        if not self.is_macos:
            return None
        version = Version(self.os_version)
        if version.major == 10:
            return MACOS_CODENAMES.get(f"10.{version.minor or 0}")
        return MACOS_CODENAMES.get(str(version.major))

    @property
    def tag(self) -> str:
        """
        The platform tag used to select bottles.

        :raises PlatformError: When no tag is known for this platform
        """
        if self.is_linux:
            return f"{self.arch}_linux"
        if self.is_macos:
            codename = self.codename
            if codename is None:
                raise PlatformError(f"Unknown macOS version {self.os_version}")
            if self.arch == "arm64":
                return f"arm64_{codename}"
            return codename
        raise PlatformError(f"Unknown platform {self.os_family}")


def normalize_arch(machine: str) -> str:
    """
    Map the many spellings of an architecture onto the names brewkit uses.
    """
    machine = machine.lower()
    return _ARCH_ALIASES.get(machine, machine)


def _macos_version() -> str:
    version = platform.mac_ver()[0]
    if not version:
        raise PlatformError("Unable to determine the macOS version")
    return version


def _linux_version() -> str:
    try:
        release = platform.freedesktop_os_release()
    except OSError:
        return platform.release()
    return release.get("VERSION_ID", platform.release())


def detect(
    system: Optional[str] = None,
    machine: Optional[str] = None,
    os_version: Optional[str] = None,
    kernel: Optional[str] = None,
    prefer_64_bit: Optional[bool] = None,
    has_system_trust_store: Optional[bool] = None,
) -> PlatformProfile:
    """
    Compute the platform profile of the running host.

    Every fact may be overridden, which is how tests build profiles for
    platforms they are not running on.

    :raises PlatformError: If the platform is not a supported family
    """
    if system is None:
        system = sys.platform
    if system.startswith("linux"):
        family = LINUX
    elif system == DARWIN:
        family = DARWIN
    else:
        raise PlatformError(f"Unsupported platform {system}")

    arch = normalize_arch(machine if machine is not None else build_arch())
    if arch not in arches[family]:
        raise PlatformError(f"Unsupported architecture {arch} for {family}")

    if kernel is None:
        kernel = platform.release()
    if os_version is None:
        os_version = _macos_version() if family == DARWIN else _linux_version()
    if prefer_64_bit is None:
        prefer_64_bit = arch != "i386" and struct.calcsize("P") == 8
    if has_system_trust_store is None:
        has_system_trust_store = (
            family == DARWIN
            and shutil.which("security") is not None
            and os.path.exists(SYSTEM_ROOT_KEYCHAIN)
        )

    profile = PlatformProfile(
        os_family=family,
        os_version=os_version,
        kernel=kernel,
        arch=arch,
        prefer_64_bit=prefer_64_bit,
        has_system_trust_store=has_system_trust_store,
    )
    log.debug("Detected platform %s", profile)
    return profile
