"""Synchronisation of workload data directories with remote storage."""

from __future__ import annotations

import logging
import posixpath
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Protocol

from edgeworker.models import (
    DataConfiguration,
    DeviceConfigurationMessage,
    S3StorageConfiguration,
)

logger = logging.getLogger(__name__)


class FileSync(Protocol):
    """Something that copies a directory tree to or from remote storage."""

    def connect(self) -> None:
        """Open the connection to the storage; raise on failure."""

    def sync_path(self, source_path: str, target_path: str) -> None:
        """Copy source_path to target_path; raise on failure."""


class SyncError(Exception):
    """Raised when one or more paths could not be synchronised."""

    def __init__(self, errors: Iterable[str] | str) -> None:
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


def _join(*parts: str) -> str:
    """Join slash-separated path parts, skipping empty ones, and clean the result."""
    joined = "/".join(part for part in parts if part)
    return posixpath.normpath(joined) if joined else ""


def contains_data_paths(data_config: DataConfiguration | None) -> bool:
    """Tell whether a data configuration lists any egress or ingress path."""
    return data_config is not None and bool(data_config.egress or data_config.ingress)


def _sync_path(sync_wrapper: FileSync, source: str, target: str) -> str | None:
    description = f"synchronizing [source]{source} => [target]{target}"
    logger.debug(description)
    try:
        sync_wrapper.sync_path(source, target)
    except Exception:
        logger.error("error while %s", description)
        return f"error while {description}"
    return None


def sync_data(sync_wrapper: FileSync, data_config: DataConfiguration, host_path: str) -> None:
    """Push egress paths and pull ingress paths; raise SyncError listing every failure."""
    errors: list[str] = []
    for data_path in data_config.egress or []:
        error = _sync_path(sync_wrapper, _join(host_path, data_path.source), data_path.target)
        if error:
            errors.append(error)
    for data_path in data_config.ingress or []:
        error = _sync_path(sync_wrapper, data_path.source, _join(host_path, data_path.target))
        if error:
            errors.append(error)
    if errors:
        raise SyncError(errors)


SyncFactory = Callable[[S3StorageConfiguration], FileSync]


class Monitor:
    """Periodically synchronises the data paths of running workloads.

    ``workloads`` provides get_device_id(), list_workloads() (items with a
    ``name``) and get_exported_host_path(name); ``config`` is the configuration
    manager; ``sync_factory`` builds a FileSync from S3 storage settings.
    """

    def __init__(self, workloads: Any, config: Any, sync_factory: SyncFactory) -> None:
        self._workloads = workloads
        self._config = config
        self._sync_factory = sync_factory
        self._interval = config.get_data_transfer_interval().total_seconds()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_sync: dict[str, datetime] = {}
        self._last_sync_lock = threading.Lock()
        self._fs_sync: FileSync | None = None
        self._sync_lock = threading.Lock()

    def __str__(self) -> str:
        return "data transfer"

    def start(self) -> None:
        """Start synchronising in the background at the configured interval."""
        self._thread = threading.Thread(target=self._loop, daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._sync_paths()
            except Exception as err:
                logger.error("Cannot sync paths: %s", err)
        logger.info("the monitor was stopped. DeviceID: %s;", self._workloads.get_device_id())

    def deregister(self) -> None:
        logger.info("stopping monitor ticker. DeviceID: %s;", self._workloads.get_device_id())
        self._stop.set()

    def get_last_successful_sync_time(self, workload_name: str) -> datetime | None:
        with self._last_sync_lock:
            return self._last_sync.get(workload_name)

    def workload_started(self, workload_name: str, report: Any) -> None:
        """Nothing needs to happen when a workload starts."""
        return None

    def workload_removed(self, workload_name: str) -> None:
        """Synchronise the workload's data one last time and forget it."""
        self._sync_paths_workload(workload_name)
        with self._last_sync_lock:
            self._last_sync.pop(workload_name, None)

    def _sync_paths_workload(self, workload_name: str) -> None:
        if not self.has_storage_defined():
            return
        data_config = self._data_config_of(workload_name)
        if not contains_data_paths(data_config):
            return
        device_id = self._workloads.get_device_id()
        try:
            sync_wrapper = self._get_fs_sync()
        except SyncError as err:
            logger.error("error while getting s3 synchronizer. DeviceID: %s; err: %s", device_id, err)
            return
        try:
            sync_wrapper.connect()
        except Exception as err:
            logger.error("error while creating s3 synchronizer. DeviceID: %s; err : %s", device_id, err)
            return
        host_path = self._workloads.get_exported_host_path(workload_name)
        try:
            sync_data(sync_wrapper, data_config, host_path)
        except SyncError:
            return
        self._store_last_update_time(workload_name)

    def _data_config_of(self, workload_name: str) -> DataConfiguration | None:
        for workload in self._config.get_workloads() or []:
            if workload.name == workload_name:
                return workload.data
        return None

    def force_sync(self) -> None:
        self._sync_paths()

    def has_storage_defined(self) -> bool:
        configuration = self._config.get_device_configuration()
        if configuration is None or configuration.storage is None:
            return False
        return configuration.storage.s3 is not None

    def set_storage(self, fs: FileSync) -> None:
        with self._sync_lock:
            self._fs_sync = fs

    def _get_fs_sync(self) -> FileSync:
        with self._sync_lock:
            if self._fs_sync is None:
                raise SyncError("cannot get filesync")
            return self._fs_sync

    def _sync_paths(self) -> None:
        device_id = self._workloads.get_device_id()
        try:
            workloads = self._workloads.list_workloads()
        except Exception as err:
            logger.error("cannot get the list of workloads. DeviceID: %s; err: %s", device_id, err)
            raise
        if not workloads:
            logger.debug("no workloads to return. DeviceID: %s;", device_id)
            return
        if not self.has_storage_defined():
            logger.debug("monitor does not have storage defined. DeviceID: %s;", device_id)
            return

        sync_wrapper = self._get_fs_sync()
        sync_wrapper.connect()

        data_paths = {
            workload.name: workload.data
            for workload in self._config.get_workloads() or []
            if contains_data_paths(workload.data)
        }

        errors: list[str] = []
        # Follow the workloads actually running, not the ones the configuration expects.
        for workload in workloads:
            data_config = data_paths.get(workload.name)
            if data_config is None:
                logger.info("workload %s not found in configuration", workload.name)
                continue
            host_path = self._workloads.get_exported_host_path(workload.name)
            try:
                sync_data(sync_wrapper, data_config, host_path)
            except SyncError as err:
                errors.extend(err.errors)
                continue
            self._store_last_update_time(workload.name)
        if errors:
            raise SyncError(errors)

    def _store_last_update_time(self, workload_name: str) -> None:
        with self._last_sync_lock:
            self._last_sync[workload_name] = datetime.now(timezone.utc)

    def init(self, configuration: DeviceConfigurationMessage) -> None:
        self.update(configuration)

    def update(self, configuration: DeviceConfigurationMessage) -> None:
        """Replace the storage synchroniser when S3 storage is configured."""
        device_configuration = configuration.configuration
        if (
            device_configuration is None
            or device_configuration.storage is None
            or device_configuration.storage.s3 is None
        ):
            return
        try:
            fs = self._sync_factory(device_configuration.storage.s3)
        except Exception as err:
            raise RuntimeError(
                f"observer update failed. DeviceID: {self._workloads.get_device_id()}; err: {err}"
            ) from err
        self.set_storage(fs)