"""Periodic heartbeat reporting device status to the management service."""

from __future__ import annotations

import json
import logging
import threading
import uuid
from http import HTTPStatus
from typing import Any

from edgeworker.models import (
    DEFAULT_HEARTBEAT_PERIOD_SECONDS,
    HEARTBEAT_STATUS_UP,
    Data,
    DeviceConfiguration,
    DeviceConfigurationMessage,
    EventInfo,
    HardwareInfo,
    Heartbeat,
    Response,
    WorkloadStatus,
)

logger = logging.getLogger(__name__)

SCOPE_DELTA = "delta"
SCOPE_FULL = "full"
HEARTBEAT_DIRECTIVE = "heartbeat"


class EmptyResponseError(ConnectionError):
    """Raised when the dispatcher answers a heartbeat with an empty response."""


def get_interval(config: DeviceConfiguration | None) -> int:
    """Return the heartbeat period in seconds, falling back to the default."""
    interval = DEFAULT_HEARTBEAT_PERIOD_SECONDS
    if config is not None and config.heartbeat is not None:
        interval = config.heartbeat.period_seconds
    if interval <= 0:
        interval = DEFAULT_HEARTBEAT_PERIOD_SECONDS
    return interval


def _hardware_profile(config: DeviceConfiguration | None):
    if config is None or config.heartbeat is None:
        return None
    return config.heartbeat.hardware_profile


def _status_code(payload: bytes) -> int | None:
    """Read the status code carried by a dispatcher response body."""
    parsed = json.loads(payload)
    if not isinstance(parsed, dict):
        raise ValueError("dispatcher response must be a JSON object")
    code = parsed.get("StatusCode")
    return int(code) if code is not None else None


class HeartbeatData:
    """Gathers the information a heartbeat carries."""

    def __init__(
        self,
        config_manager: Any,
        workload_manager: Any,
        ansible_manager: Any,
        hardware: Any,
        data_monitor: Any,
        os_info: Any,
    ) -> None:
        self.config_manager = config_manager
        self.workload_manager = workload_manager
        self.ansible_manager = ansible_manager
        self.hardware = hardware
        self.data_monitor = data_monitor
        self.os_info = os_info
        self._previous: HardwareInfo | None = None
        self._previous_lock = threading.Lock()

    def retrieve_info(self) -> Heartbeat:
        """Build the heartbeat describing the device right now."""
        statuses: list[WorkloadStatus] = []
        try:
            workloads = self.workload_manager.list_workloads() or []
        except Exception as err:
            logger.error(
                "cannot get workload information. DeviceID: %s; err: %s",
                self.workload_manager.get_device_id(),
                err,
            )
            workloads = []
        for info in workloads:
            status = WorkloadStatus(name=info.name, status=info.status)
            last_sync = self.data_monitor.get_last_successful_sync_time(info.name)
            if last_sync is not None:
                status.last_data_upload = last_sync.isoformat()
            statuses.append(status)

        profile = _hardware_profile(self.config_manager.get_device_configuration())
        hardware_info = None
        if profile is not None and profile.include:
            hardware_info = self._build_hardware_info()

        ansible_events: list[EventInfo] = []
        if self.ansible_manager is not None:
            ansible_events = self.ansible_manager.pop_events()
        events = list(self.workload_manager.pop_events() or []) + ansible_events

        return Heartbeat(
            status=HEARTBEAT_STATUS_UP,
            version=self.config_manager.get_configuration_version(),
            workloads=statuses or None,
            hardware=hardware_info,
            events=events,
            upgrade=self.os_info.get_upgrade_status() if self.os_info is not None else None,
        )

    def get_previous_hardware_info(self) -> HardwareInfo | None:
        with self._previous_lock:
            return self._previous

    def set_previous_hardware_info(self, info: HardwareInfo | None) -> None:
        with self._previous_lock:
            self._previous = info

    def _build_hardware_info(self) -> HardwareInfo | None:
        device_id = self.workload_manager.get_device_id()
        try:
            current = self.hardware.create_hardware_mutable_information()
        except Exception as err:
            logger.error(
                "cannot create hardware mutable information. DeviceID: %s; err: %s", device_id, err
            )
            return None
        hardware_info = self._mutable_delta(current)

        if self.get_previous_hardware_info() is None:
            # The first heartbeat carries everything; later ones only mutable data.
            try:
                hardware_info = self.hardware.get_hardware_information()
            except Exception as err:
                logger.error(
                    "cannot get full hardware information. DeviceID: %s; err: %s", device_id, err
                )
                hardware_info = None
        self.set_previous_hardware_info(current)
        return hardware_info

    def _mutable_delta(self, current: HardwareInfo) -> HardwareInfo:
        profile = _hardware_profile(self.config_manager.get_device_configuration())
        if profile is not None and profile.scope == SCOPE_DELTA:
            logger.debug(
                "Checking if mutable hardware information change between heartbeat "
                "(scope = delta). DeviceID: %s",
                self.workload_manager.get_device_id(),
            )
            previous = self.get_previous_hardware_info()
            if previous is not None:
                return self.hardware.get_mutable_hardware_info_delta(previous, current)
        return current


class _Ticker:
    """Calls a function every period seconds on a background thread until stopped."""

    def __init__(self, period: float, action) -> None:
        self._stop = threading.Event()
        self._thread = threading.Thread(target=self._loop, args=(period, action), daemon=True)
        self._thread.start()

    def _loop(self, period: float, action) -> None:
        while not self._stop.wait(period):
            action()

    def stop(self) -> None:
        self._stop.set()


class HeartbeatService:
    """Sends heartbeats to the dispatcher at the configured period."""

    def __init__(
        self,
        dispatcher_client: Any,
        config_manager: Any,
        workload_manager: Any,
        hardware: Any,
        data_monitor: Any,
        os_info: Any,
        registration: Any,
    ) -> None:
        self._client = dispatcher_client
        self.data = HeartbeatData(
            config_manager, workload_manager, None, hardware, data_monitor, os_info
        )
        self._registration = registration
        self._first_heartbeat = True
        self._previous_period = -1
        self._ticker: _Ticker | None = None
        self._lock = threading.RLock()
        self._send_lock = threading.Lock()
        self._log = logger

    def __str__(self) -> str:
        return "heartbeat"

    def set_logger(self, logger: logging.Logger) -> None:
        self._log = logger

    def _device_id(self) -> str:
        return self.data.workload_manager.get_device_id()

    def _send(self, data: Data) -> None:
        with self._send_lock:
            logger.debug("Heartbeat send: Sending data: %s; Device ID: %s", data, self._device_id())
            response: Response | None = self._client.send(data)
            logger.debug("Heartbeat send: Response: %s; Device ID: %s", response, self._device_id())
            if response is None or not response.response:
                raise EmptyResponseError(
                    "empty response received, host may not be reachable; "
                    f"response: {response}, Device ID: {self._device_id()}"
                )
            if _status_code(response.response) != HTTPStatus.UNAUTHORIZED:
                return
            # The certificate expired: register again, then resend.
            self._registration.register_device()
            self._client.send(data)

    def start(self) -> None:
        period = get_interval(self.data.config_manager.get_device_configuration())
        with self._lock:
            self._previous_period = period
            self._init_ticker(period)

    def has_started(self) -> bool:
        with self._lock:
            return self._ticker is not None

    def init(self, config: DeviceConfigurationMessage) -> None:
        """Nothing to do: the period comes from updates sent by the service."""
        return None

    def update(self, config: DeviceConfigurationMessage) -> None:
        """Restart the ticker when the heartbeat period changes."""
        period = get_interval(config.configuration)
        with self._lock:
            previous = self._previous_period
            if previous > 0 and previous == period:
                return
            self._log.debug(
                "Heartbeat configuration update: periodSeconds changed from %d to %d; "
                "Device ID: %s",
                previous,
                period,
                self._device_id(),
            )
            self._log.info(
                "reconfiguring ticker with interval: %s. DeviceID: %s", period, self._device_id()
            )
            self._stop_ticker()
            self._previous_period = period
            self._init_ticker(period)

    def push_information(self) -> None:
        """Send one heartbeat; raise when it could not be delivered."""
        info = self.data.retrieve_info()
        device_id = self._device_id()
        logger.debug("pushInformation: Heartbeat info: %s; DeviceID: %s;", info, device_id)
        content = json.dumps(info.to_dict()).encode("utf-8")
        data = Data(message_id=str(uuid.uuid4()), content=content, directive=HEARTBEAT_DIRECTIVE)
        try:
            self._send(data)
        except Exception:
            with self._lock:
                if self._first_heartbeat:
                    self.data.set_previous_hardware_info(None)
            raise
        with self._lock:
            self._first_heartbeat = False

    def _tick(self) -> None:
        try:
            self.push_information()
        except Exception as err:
            self._log.error(
                "heartbeat interval cannot send the data. DeviceID: %s; err: %s",
                self._device_id(),
                err,
            )

    def _init_ticker(self, period: int) -> None:
        self._ticker = _Ticker(period, self._tick)
        self._log.info("the heartbeat was started. DeviceID: %s", self._device_id())

    def _stop_ticker(self) -> None:
        if self._ticker is not None:
            self._ticker.stop()

    def deregister(self) -> None:
        self._log.info("stopping heartbeat ticker. DeviceID: %s", self._device_id())
        with self._lock:
            self._stop_ticker()