"""Device configuration storage and propagation to interested components."""

from __future__ import annotations

import json
import logging
import os
import threading
from datetime import timedelta
from pathlib import Path
from typing import Iterable

from edgeworker.models import (
    DeviceConfiguration,
    DeviceConfigurationMessage,
    Secret,
    Workload,
    default_device_configuration_message,
)

logger = logging.getLogger(__name__)

DEVICE_CONFIG_FILE_NAME = "device-config.json"
DATA_TRANSFER_INTERVAL = timedelta(seconds=15)


class Observer:
    """Base for components that follow configuration changes.

    By default the initial configuration is handled like any later update,
    and updates are ignored.
    """

    def init(self, configuration: DeviceConfigurationMessage) -> None:
        self.update(configuration)

    def update(self, configuration: DeviceConfigurationMessage) -> None:
        return None


class ConfigurationUpdateError(Exception):
    """Raised when a configuration update was not applied cleanly."""

    def __init__(self, errors: Iterable[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors))


def is_equal_unordered_secret_lists(
    x: list[Secret] | None, y: list[Secret] | None
) -> bool:
    """Compare secret lists by content regardless of order; None equals empty."""
    x = x or []
    y = y or []
    if len(x) != len(y):
        return False
    by_name = {secret.name: secret for secret in x}
    return all(
        secret.name in by_name and by_name[secret.name] == secret for secret in y
    )


def _write_file(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as handle:
        handle.write(data)


class ConfigurationManager:
    """Holds the current device configuration and persists it in the data directory."""

    def __init__(self, data_dir: str | os.PathLike) -> None:
        self._config_file = os.path.join(os.fspath(data_dir), DEVICE_CONFIG_FILE_NAME)
        self._lock = threading.RLock()
        self._observers: list[Observer] = []
        self._initial = False
        logger.info("device config file: %s", self._config_file)

        try:
            raw = Path(self._config_file).read_bytes()
        except OSError as err:
            logger.error("%s", err)
            self._message = default_device_configuration_message()
            self._initial = True
            return
        try:
            loaded = json.loads(raw)
            self._message = (
                DeviceConfigurationMessage()
                if loaded is None
                else DeviceConfigurationMessage.from_dict(loaded)
            )
        except (ValueError, TypeError) as err:
            logger.error("%s", err)
            self._message = default_device_configuration_message()

    def __str__(self) -> str:
        return "configuration manager"

    @property
    def device_config_file(self) -> str:
        return self._config_file

    def register_observer(self, observer: Observer) -> None:
        """Hand the current configuration to the observer and keep it for updates."""
        try:
            observer.init(self._message)
        except Exception as err:  # an observer failing must not prevent registration
            logger.error("Running config init observer failed: %s", err)
        self._observers.append(observer)

    def get_device_configuration(self) -> DeviceConfiguration | None:
        with self._lock:
            return self._message.configuration

    def get_device_id(self) -> str:
        with self._lock:
            return self._message.device_id

    def get_workloads(self) -> list[Workload] | None:
        with self._lock:
            return self._message.workloads

    def get_secrets(self) -> list[Secret] | None:
        with self._lock:
            return self._message.secrets

    def update(self, message: DeviceConfigurationMessage) -> None:
        """Apply a new configuration, notify observers and persist it.

        Raises ConfigurationUpdateError when an observer failed or the file could
        not be written; in the first case the new configuration is still kept.
        """
        with self._lock:
            current = self._message
            configuration_equal = message.configuration == current.configuration
            workloads_equal = message.workloads == current.workloads
            secrets_equal = is_equal_unordered_secret_lists(message.secrets, current.secrets)

        logger.debug(
            "workloads equal: [%s]; configurationEqual: [%s]; secretsEqual: [%s]; DeviceID: [%s]",
            workloads_equal,
            configuration_equal,
            secrets_equal,
            message.device_id,
        )
        should_update = not (configuration_equal and workloads_equal and secrets_equal)
        if self.is_initial_config():
            logger.debug("force update because it's init phase")
            should_update = True
        if not should_update:
            logger.debug("configuration didn't change")
            return

        errors: list[str] = []
        for observer in list(self._observers):
            try:
                observer.update(message)
            except Exception as err:
                errors.append(f"running config observer failed: {err}")

        payload = json.dumps(message.to_dict(), indent=1).encode("utf-8")
        try:
            _write_file(self._config_file, payload, 0o600)
        except OSError as err:
            raise ConfigurationUpdateError(
                [f"cannot write device config file '{self._config_file}': {err}"]
            ) from err

        with self._lock:
            self._message = message
            self._initial = False

        if errors:
            raise ConfigurationUpdateError(errors)

    def get_data_transfer_interval(self) -> timedelta:
        return DATA_TRANSFER_INTERVAL

    def get_configuration_version(self) -> str:
        with self._lock:
            version = self._message.version
        logger.debug("configuration version: %s", version)
        return version

    def is_initial_config(self) -> bool:
        with self._lock:
            return self._initial

    def deregister(self) -> None:
        """Remove the persisted configuration file."""
        logger.info("removing device config file: %s", self._config_file)
        try:
            os.remove(self._config_file)
        except OSError as err:
            logger.error("%s", err)
            raise