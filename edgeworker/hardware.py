"""Collection of hardware information about the device."""

from __future__ import annotations

import ipaddress
import logging
import platform
import socket
import struct
from pathlib import Path
from typing import Any

from edgeworker.models import CPU, HardwareInfo, Interface, SystemVendor

try:
    import fcntl
except ImportError:  # not available outside POSIX systems
    fcntl = None

logger = logging.getLogger(__name__)

_SIOCGIFFLAGS = 0x8913
_SIOCGIFADDR = 0x8915
_SIOCGIFNETMASK = 0x891B
_IFF_LOOPBACK = 0x8


class HardwareNotInitializedError(RuntimeError):
    """Raised when hardware information is requested before init()."""

    def __init__(self) -> None:
        super().__init__("HardwareInfo object has not been initialized")


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8", errors="replace").strip()
    except OSError:
        return ""


def _ifreq(name: str, request: int) -> bytes | None:
    if fcntl is None:
        return None
    with socket.socket(socket.AF_INET, socket.SOCK_DGRAM) as sock:
        try:
            return fcntl.ioctl(sock.fileno(), request, struct.pack("256s", name[:15].encode()))
        except OSError:
            return None


class _LocalDependencies:
    """Reads hardware details from the running system."""

    def __init__(self, root: str = "/") -> None:
        self._root = Path(root)

    def cpu_info(self) -> tuple[str, str]:
        model = ""
        for line in _read_text(self._root / "proc/cpuinfo").splitlines():
            key, sep, value = line.partition(":")
            if sep and key.strip().lower() == "model name":
                model = value.strip()
                break
        return platform.machine(), model or platform.processor()

    def system_vendor(self) -> SystemVendor:
        dmi = self._root / "sys/class/dmi/id"
        return SystemVendor(
            manufacturer=_read_text(dmi / "sys_vendor"),
            product_name=_read_text(dmi / "product_name"),
            serial_number=_read_text(dmi / "product_serial"),
        )

    def hostname(self) -> str:
        return socket.gethostname()

    def interfaces(self) -> list[Interface]:
        try:
            names = [name for _, name in socket.if_nameindex()]
        except OSError:
            return []
        ipv6 = self._ipv6_addresses()
        return [
            Interface(ipv4_addresses=self._ipv4_addresses(name), ipv6_addresses=ipv6.get(name, []))
            for name in names
            if not self._is_loopback(name)
        ]

    @staticmethod
    def _is_loopback(name: str) -> bool:
        flags = _ifreq(name, _SIOCGIFFLAGS)
        if flags is None:
            return name == "lo"
        return bool(struct.unpack_from("H", flags, 16)[0] & _IFF_LOOPBACK)

    @staticmethod
    def _ipv4_addresses(name: str) -> list[str]:
        addr = _ifreq(name, _SIOCGIFADDR)
        if addr is None:
            return []
        ip = socket.inet_ntoa(addr[20:24])
        mask = _ifreq(name, _SIOCGIFNETMASK)
        prefix = bin(int.from_bytes(mask[20:24], "big")).count("1") if mask else 32
        return [f"{ip}/{prefix}"]

    def _ipv6_addresses(self) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {}
        for line in _read_text(self._root / "proc/net/if_inet6").splitlines():
            parts = line.split()
            if len(parts) < 6:
                continue
            try:
                address = ipaddress.IPv6Address(bytes.fromhex(parts[0]))
                prefix = int(parts[2], 16)
            except ValueError:
                continue
            result.setdefault(parts[5], []).append(f"{address}/{prefix}")
        return result


def get_mutable_hardware_info_delta(previous: HardwareInfo, new: HardwareInfo) -> HardwareInfo:
    """Return only the mutable fields of `new` that differ from `previous`."""
    delta = HardwareInfo()
    if previous.hostname != new.hostname:
        delta.hostname = new.hostname
    if previous.interfaces != new.interfaces:
        delta.interfaces = new.interfaces
    return delta


class HardwareInfoProvider:
    """Builds hardware descriptions from a source of system details.

    The source provides cpu_info() -> (architecture, model name),
    system_vendor() -> SystemVendor, hostname() -> str and interfaces(),
    whose items carry ipv4_addresses and ipv6_addresses.
    """

    def __init__(self) -> None:
        self._dependencies: Any = None

    def init(self, dependencies: Any = None) -> None:
        """Use the given source of details, or the running system when None."""
        self._dependencies = dependencies if dependencies is not None else _LocalDependencies()

    def _require_dependencies(self) -> Any:
        if self._dependencies is None:
            raise HardwareNotInitializedError()
        return self._dependencies

    def get_hardware_information(self) -> HardwareInfo:
        hardware_info = HardwareInfo()
        self.get_hardware_immutable_information(hardware_info)
        self._fill_mutable_information(hardware_info)
        return hardware_info

    def get_hardware_immutable_information(self, hardware_info: HardwareInfo) -> HardwareInfo:
        """Fill CPU and system vendor into `hardware_info` and return it."""
        dependencies = self._require_dependencies()
        architecture, model_name = dependencies.cpu_info()
        hardware_info.cpu = CPU(architecture=architecture, model_name=model_name, flags=[])
        hardware_info.system_vendor = dependencies.system_vendor()
        return hardware_info

    def create_hardware_mutable_information(self) -> HardwareInfo:
        hardware_info = HardwareInfo()
        self._fill_mutable_information(hardware_info)
        return hardware_info

    def _fill_mutable_information(self, hardware_info: HardwareInfo) -> None:
        dependencies = self._require_dependencies()
        hardware_info.hostname = dependencies.hostname()
        new_interfaces = [
            Interface(
                ipv4_addresses=list(item.ipv4_addresses or []),
                ipv6_addresses=list(item.ipv6_addresses or []),
                flags=[],
            )
            for item in dependencies.interfaces()
            if item.ipv4_addresses or item.ipv6_addresses
        ]
        if new_interfaces:
            hardware_info.interfaces = (hardware_info.interfaces or []) + new_interfaces

    def get_mutable_hardware_info_delta(
        self, previous: HardwareInfo, new: HardwareInfo
    ) -> HardwareInfo:
        return get_mutable_hardware_info_delta(previous, new)