"""Data models exchanged between the device worker and its management service."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field, fields
from typing import Any

HEARTBEAT_STATUS_UP = "up"
EVENT_INFO_TYPE_WARN = "warn"
DEFAULT_HEARTBEAT_PERIOD_SECONDS = 60


def _encode(value: Any, binary: bool) -> Any:
    if binary:
        return base64.b64encode(value).decode("ascii")
    if isinstance(value, _Model):
        return value.to_dict()
    if isinstance(value, list):
        return [_encode(item, False) for item in value]
    if isinstance(value, dict):
        return {key: _encode(item, False) for key, item in value.items()}
    return value


def _decode(value: Any, nested: type | None, binary: bool) -> Any:
    if value is None:
        return None
    if binary:
        return base64.b64decode(value)
    if nested is not None:
        if isinstance(value, list):
            return [nested.from_dict(item) for item in value]
        return nested.from_dict(value)
    if isinstance(value, list):
        return list(value)
    if isinstance(value, dict):
        return dict(value)
    return value


def _model_to_dict(model: Any) -> dict[str, Any]:
    result: dict[str, Any] = {}
    for item in fields(model):
        value = getattr(model, item.name)
        if value is None:
            continue
        result[item.name] = _encode(value, item.name in model._binary)
    return result


def _model_from_dict(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        raise TypeError(f"{cls.__name__} expects a mapping, got {type(data).__name__}")
    kwargs = {}
    for item in fields(cls):
        if item.name in data:
            kwargs[item.name] = _decode(
                data[item.name], cls._nested.get(item.name), item.name in cls._binary
            )
    return cls(**kwargs)


class _Model:
    """Shared dictionary conversion for the model dataclasses."""

    _nested: dict[str, type] = {}
    _binary: frozenset[str] = frozenset()

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dictionary; unset (None) fields are left out."""
        return _model_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any):
        """Build an instance from a dictionary, ignoring unknown keys."""
        return _model_from_dict(cls, data)


@dataclass
class HardwareProfileConfiguration(_Model):
    include: bool = False
    scope: str = ""


@dataclass
class HeartbeatConfiguration(_Model):
    hardware_profile: HardwareProfileConfiguration | None = None
    period_seconds: int = 0

    _nested = {"hardware_profile": HardwareProfileConfiguration}


@dataclass
class S3StorageConfiguration(_Model):
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_ca_bundle: str = ""
    bucket_host: str = ""
    bucket_port: int = 0
    bucket_name: str = ""
    bucket_region: str = ""


@dataclass
class StorageConfiguration(_Model):
    s3: S3StorageConfiguration | None = None

    _nested = {"s3": S3StorageConfiguration}


@dataclass
class DeviceConfiguration(_Model):
    heartbeat: HeartbeatConfiguration | None = None
    storage: StorageConfiguration | None = None

    _nested = {"heartbeat": HeartbeatConfiguration, "storage": StorageConfiguration}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dictionary; unset (None) fields are left out."""
        return _model_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> DeviceConfiguration:
        """Build a device configuration from a dictionary."""
        return _model_from_dict(cls, data)


@dataclass
class DataPath(_Model):
    source: str = ""
    target: str = ""


@dataclass
class DataConfiguration(_Model):
    egress: list[DataPath] | None = None
    ingress: list[DataPath] | None = None

    _nested = {"egress": DataPath, "ingress": DataPath}


@dataclass
class Workload(_Model):
    name: str = ""
    specification: str = ""
    data: DataConfiguration | None = None

    _nested = {"data": DataConfiguration}


@dataclass
class Secret(_Model):
    name: str = ""
    data: str = ""


@dataclass
class DeviceConfigurationMessage(_Model):
    configuration: DeviceConfiguration | None = None
    device_id: str = ""
    version: str = ""
    workloads: list[Workload] | None = None
    workloads_monitoring_interval: int = 0
    secrets: list[Secret] | None = None
    ansible_playbook: str = ""

    _nested = {
        "configuration": DeviceConfiguration,
        "workloads": Workload,
        "secrets": Secret,
    }

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dictionary; unset (None) fields are left out."""
        return _model_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> DeviceConfigurationMessage:
        """Build a configuration message from a dictionary."""
        return _model_from_dict(cls, data)


@dataclass
class CPU(_Model):
    architecture: str = ""
    model_name: str = ""
    flags: list[str] | None = None


@dataclass
class SystemVendor(_Model):
    manufacturer: str = ""
    product_name: str = ""
    serial_number: str = ""
    virtual: bool = False


@dataclass
class Interface(_Model):
    ipv4_addresses: list[str] | None = None
    ipv6_addresses: list[str] | None = None
    flags: list[str] | None = None


@dataclass
class HardwareInfo(_Model):
    cpu: CPU | None = None
    hostname: str = ""
    interfaces: list[Interface] | None = None
    system_vendor: SystemVendor | None = None

    _nested = {"cpu": CPU, "interfaces": Interface, "system_vendor": SystemVendor}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dictionary; unset (None) fields are left out."""
        return _model_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> HardwareInfo:
        """Build hardware information from a dictionary."""
        return _model_from_dict(cls, data)


@dataclass
class EventInfo(_Model):
    message: str = ""
    reason: str = ""
    type: str = ""


@dataclass
class WorkloadStatus(_Model):
    name: str = ""
    status: str = ""
    last_data_upload: str | None = None


@dataclass
class Heartbeat(_Model):
    status: str = ""
    version: str = ""
    workloads: list[WorkloadStatus] | None = None
    hardware: HardwareInfo | None = None
    events: list[EventInfo] | None = None
    upgrade: dict[str, Any] | None = None

    _nested = {"workloads": WorkloadStatus, "hardware": HardwareInfo, "events": EventInfo}

    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-ready dictionary; unset (None) fields are left out."""
        return _model_to_dict(self)

    @classmethod
    def from_dict(cls, data: Any) -> Heartbeat:
        """Build a heartbeat from a dictionary."""
        return _model_from_dict(cls, data)


@dataclass
class Data(_Model):
    """A message travelling through the dispatcher."""

    message_id: str = ""
    content: bytes = b""
    directive: str = ""
    response_to: str = ""
    metadata: dict[str, str] = field(default_factory=dict)

    _binary = frozenset({"content"})


@dataclass
class Response(_Model):
    """The dispatcher's answer to a sent message."""

    response: bytes = b""
    metadata: dict[str, str] = field(default_factory=dict)

    _binary = frozenset({"response"})


def default_device_configuration_message() -> DeviceConfigurationMessage:
    """Return a fresh copy of the configuration used before any is received."""
    return DeviceConfigurationMessage(
        configuration=DeviceConfiguration(
            heartbeat=HeartbeatConfiguration(
                hardware_profile=HardwareProfileConfiguration(),
                period_seconds=DEFAULT_HEARTBEAT_PERIOD_SECONDS,
            )
        )
    )