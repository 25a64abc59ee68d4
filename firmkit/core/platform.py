"""
Host platform detection and platform matching for firmkit.

This module detects the current platform (operating system and CPU
architecture) and provides the closed set of values that manifest platform
matchers are built from. Matchers are resolved once, when the installation
plan is built; nothing downstream does free-form string matching.

Usage:
    from firmkit.core.platform import detect_platform, PlatformMatcher

    host = detect_platform()
    print(host.platform_string())          # e.g. 'linux-x64'

    matcher = PlatformMatcher.parse("linux")
    matcher.matches(host)                  # True on any Linux host
"""

import functools
import platform
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class OperatingSystem(Enum):
    """Operating systems a tool archive can target."""

    WINDOWS = "windows"
    LINUX = "linux"
    MACOS = "macos"


class Architecture(Enum):
    """CPU architectures a tool archive can target."""

    X64 = "x64"
    X86 = "x86"
    ARM64 = "arm64"
    ARM = "arm"
    RISCV64 = "riscv64"


_OS_ALIASES = {
    "windows": OperatingSystem.WINDOWS,
    "win32": OperatingSystem.WINDOWS,
    "win64": OperatingSystem.WINDOWS,
    "linux": OperatingSystem.LINUX,
    "macos": OperatingSystem.MACOS,
    "darwin": OperatingSystem.MACOS,
    "osx": OperatingSystem.MACOS,
}

_ARCH_ALIASES = {
    "x64": Architecture.X64,
    "x86_64": Architecture.X64,
    "amd64": Architecture.X64,
    "x86": Architecture.X86,
    "i386": Architecture.X86,
    "i686": Architecture.X86,
    "arm64": Architecture.ARM64,
    "aarch64": Architecture.ARM64,
    "arm": Architecture.ARM,
    "armv7l": Architecture.ARM,
    "armhf": Architecture.ARM,
    "riscv64": Architecture.RISCV64,
}

ANY = "any"


def parse_os(value: str) -> OperatingSystem:
    """
    Parse an operating system name, accepting common aliases.

    Raises:
        ValueError: If the name is not a known operating system
    """
    try:
        return _OS_ALIASES[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown operating system: {value!r}") from None


def parse_arch(value: str) -> Architecture:
    """
    Parse an architecture name, accepting common aliases.

    Raises:
        ValueError: If the name is not a known architecture
    """
    try:
        return _ARCH_ALIASES[value.strip().lower()]
    except KeyError:
        raise ValueError(f"Unknown architecture: {value!r}") from None


@dataclass(frozen=True)
class HostPlatform:
    """
    Platform a plan is resolved for.

    Attributes:
        os: Operating system
        arch: CPU architecture
    """

    os: OperatingSystem
    arch: Architecture

    def platform_string(self) -> str:
        """
        Get canonical platform string (e.g., 'linux-x64', 'macos-arm64').

        Example:
            >>> HostPlatform(OperatingSystem.LINUX, Architecture.X64).platform_string()
            'linux-x64'
        """
        return f"{self.os.value}-{self.arch.value}"

    def toolchain_suffix(self) -> str:
        """
        Get the platform suffix most upstream archives use in file names.

        Example:
            >>> host = HostPlatform(OperatingSystem.LINUX, Architecture.ARM64)
            >>> host.toolchain_suffix()
            'linux-aarch64'
        """
        arch_map = {
            Architecture.X64: "x86_64",
            Architecture.ARM64: "aarch64",
            Architecture.X86: "i686",
            Architecture.ARM: "armv7l",
        }
        return f"{self.os.value}-{arch_map.get(self.arch, self.arch.value)}"

    @classmethod
    def parse(cls, value: str) -> "HostPlatform":
        """
        Parse a platform string such as 'linux-x64' or 'darwin-aarch64'.

        Raises:
            ValueError: If the string is not '<os>-<arch>' with known values
        """
        os_part, sep, arch_part = value.strip().partition("-")
        if not sep:
            raise ValueError(f"Invalid platform string: {value!r}")
        return cls(os=parse_os(os_part), arch=parse_arch(arch_part))

    def __str__(self) -> str:
        return self.platform_string()


@dataclass(frozen=True)
class PlatformMatcher:
    """
    Closed OS x architecture matcher; ``None`` in a field matches anything.

    Attributes:
        os: Required operating system, or None for any
        arch: Required architecture, or None for any
    """

    os: Optional[OperatingSystem] = None
    arch: Optional[Architecture] = None

    @property
    def specificity(self) -> int:
        """Number of constrained fields (0 = matches every platform)."""
        return int(self.os is not None) + int(self.arch is not None)

    def matches(self, host: HostPlatform) -> bool:
        """Check whether this matcher accepts the host platform."""
        if self.os is not None and self.os != host.os:
            return False
        if self.arch is not None and self.arch != host.arch:
            return False
        return True

    @classmethod
    def parse(cls, value: Union[str, dict, None]) -> "PlatformMatcher":
        """
        Build a matcher from its manifest representation.

        Accepted forms:
        - ``None`` or ``"any"``: matches every platform
        - ``"linux"``: any architecture on Linux
        - ``"linux-x64"`` / ``"any-arm64"``: OS and architecture
        - ``{"os": "linux", "arch": "x64"}``: either key may be omitted

        Raises:
            ValueError: If a value is not a known OS or architecture
        """
        if value is None:
            return cls()

        if isinstance(value, dict):
            unknown = set(value) - {"os", "arch"}
            if unknown:
                raise ValueError(f"Unknown platform keys: {sorted(unknown)}")
            os_value = value.get("os", ANY)
            arch_value = value.get("arch", ANY)
        elif isinstance(value, str):
            text = value.strip().lower()
            if text == ANY:
                return cls()
            os_value, sep, arch_value = text.partition("-")
            if not sep:
                arch_value = ANY
        else:
            raise ValueError(f"Invalid platform matcher: {value!r}")

        os_part = None if str(os_value).lower() == ANY else parse_os(str(os_value))
        arch_part = (
            None if str(arch_value).lower() == ANY else parse_arch(str(arch_value))
        )
        return cls(os=os_part, arch=arch_part)

    def __str__(self) -> str:
        os_text = self.os.value if self.os else ANY
        arch_text = self.arch.value if self.arch else ANY
        return f"{os_text}-{arch_text}"


@functools.lru_cache(maxsize=1)
def detect_platform() -> HostPlatform:
    """
    Detect the current host platform.

    This function is cached - it only runs detection once per process.

    Raises:
        RuntimeError: If the OS or architecture is not supported
    """
    return HostPlatform(os=_detect_os(), arch=_detect_architecture())


def _detect_os() -> OperatingSystem:
    system = platform.system().lower()
    try:
        return parse_os(system)
    except ValueError:
        raise RuntimeError(f"Unsupported operating system: {system}") from None


def _detect_architecture() -> Architecture:
    machine = platform.machine().lower()
    if machine in _ARCH_ALIASES:
        return _ARCH_ALIASES[machine]
    if machine.startswith("armv8"):
        return Architecture.ARM64
    if machine.startswith("arm"):
        return Architecture.ARM
    raise RuntimeError(f"Unsupported architecture: {machine}")


def clear_platform_cache():
    """
    Clear the platform detection cache.

    This forces the next call to detect_platform() to re-detect.
    """
    detect_platform.cache_clear()


__all__ = [
    "OperatingSystem",
    "Architecture",
    "HostPlatform",
    "PlatformMatcher",
    "parse_os",
    "parse_arch",
    "detect_platform",
    "clear_platform_cache",
]
