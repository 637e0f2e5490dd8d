import copy
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

import pytest

from edgeworker.ansible_manager import AnsibleManager
from edgeworker.configuration import ConfigurationManager
from edgeworker.hardware import get_mutable_hardware_info_delta
from edgeworker.heartbeat import (
    SCOPE_DELTA,
    SCOPE_FULL,
    EmptyResponseError,
    HeartbeatData,
    HeartbeatService,
    get_interval,
)
from edgeworker.models import (
    CPU,
    EVENT_INFO_TYPE_WARN,
    DeviceConfiguration,
    DeviceConfigurationMessage,
    EventInfo,
    HardwareInfo,
    Heartbeat,
    HeartbeatConfiguration,
    Interface,
    Response,
    SystemVendor,
    Workload,
)


@dataclass
class WorkloadInfo:
    id: str
    name: str
    status: str


class FakeWorkloads:
    def __init__(self, workloads=None, error=None):
        self.workloads = workloads or []
        self.error = error

    def get_device_id(self):
        return "device-id-123"

    def list_workloads(self):
        if self.error:
            raise self.error
        return list(self.workloads)

    def pop_events(self):
        return []


class FakeMonitor:
    def __init__(self, times=None):
        self.times = times or {}

    def get_last_successful_sync_time(self, name):
        return self.times.get(name)


class FakeOs:
    def get_upgrade_status(self):
        return {"current_commit_id": "abc"}


class FakeHardware:
    def __init__(self, hostname="localhost", ipv4=("127.0.0.1", "0.0.0.0")):
        self.full = HardwareInfo(
            hostname=hostname,
            interfaces=[Interface(ipv4_addresses=list(ipv4))],
            cpu=CPU(architecture="TestArchi", model_name="ModelTest"),
            system_vendor=SystemVendor(
                manufacturer="ManufacturerTest", product_name="ProductTest", serial_number="SerialTest"
            ),
        )
        self.mutable = HardwareInfo(hostname=hostname, interfaces=[Interface(ipv4_addresses=list(ipv4))])
        self.full_calls = 0
        self.mutable_calls = 0
        self.delta_calls = 0

    def get_hardware_information(self):
        self.full_calls += 1
        return copy.deepcopy(self.full)

    def create_hardware_mutable_information(self):
        self.mutable_calls += 1
        return copy.deepcopy(self.mutable)

    def get_mutable_hardware_info_delta(self, previous, new):
        self.delta_calls += 1
        return get_mutable_hardware_info_delta(previous, new)


class RecordingDispatcher:
    def __init__(self, status_code=200, fail=False, empty=False):
        self.status_code = status_code
        self.fail = fail
        self.empty = empty
        self.sent = []

    def send(self, data):
        self.sent.append(data)
        if self.fail:
            raise ConnectionError("Error sending")
        if self.empty:
            return Response()
        return Response(response=json.dumps({"StatusCode": self.status_code}).encode())

    def hardware_list(self):
        return [Heartbeat.from_dict(json.loads(data.content)).hardware for data in self.sent]


class FakeRegistration:
    def __init__(self):
        self.calls = 0

    def register_device(self):
        self.calls += 1


@pytest.fixture
def config_manager(tmp_path):
    return ConfigurationManager(tmp_path)


@pytest.fixture
def ansible_manager(tmp_path):
    directory = tmp_path / "ansible"
    directory.mkdir()
    return AnsibleManager(RecordingDispatcher(), directory, lambda command, timeout: b"{}")


def running():
    return FakeWorkloads([WorkloadInfo(id="test", name="test", status="Running")])


def enable_hardware(config_manager, scope=SCOPE_DELTA):
    profile = config_manager.get_device_configuration().heartbeat.hardware_profile
    profile.scope = scope
    profile.include = True


def make_data(config_manager, workloads, ansible=None, hardware=None, monitor=None):
    return HeartbeatData(config_manager, workloads, ansible, hardware or FakeHardware(), monitor or FakeMonitor(), FakeOs())


def make_service(tmp_path, client, hardware, period=1, registration=None):
    config = ConfigurationManager(tmp_path)
    config.get_device_configuration().heartbeat.period_seconds = period
    enable_hardware(config)
    return HeartbeatService(
        client, config, FakeWorkloads(), hardware, FakeMonitor(), FakeOs(), registration or FakeRegistration()
    )


def test_empty_workloads_up_status(config_manager, ansible_manager):
    info = make_data(config_manager, FakeWorkloads(), ansible_manager).retrieve_info()
    assert info.status == "up"
    assert not info.workloads
    assert info.upgrade == {"current_commit_id": "abc"}


def test_reports_workload(config_manager, ansible_manager):
    info = make_data(config_manager, running(), ansible_manager).retrieve_info()
    assert info.status == "up"
    assert len(info.workloads) == 1
    assert info.workloads[0].name == "test"
    assert info.workloads[0].status == "Running"


def test_reports_last_data_upload(config_manager):
    moment = datetime(2022, 2, 3, 8, 46, 38, tzinfo=timezone.utc)
    info = make_data(config_manager, running(), monitor=FakeMonitor({"test": moment})).retrieve_info()
    assert info.workloads[0].last_data_upload == moment.isoformat()


def test_reports_ansible_events(config_manager, ansible_manager):
    ansible_manager.add_to_event_queue(
        EventInfo(message="test playbook error string", reason="Failed", type=EVENT_INFO_TYPE_WARN)
    )
    info = make_data(config_manager, FakeWorkloads(), ansible_manager).retrieve_info()
    assert info.status == "up"
    assert not info.workloads
    assert len(info.events) == 1
    assert info.events[0].message == "test playbook error string"
    assert info.events[0].reason == "Failed"


def test_cannot_list_workloads(config_manager, ansible_manager):
    workloads = FakeWorkloads(error=RuntimeError("invalid list"))
    info = make_data(config_manager, workloads, ansible_manager).retrieve_info()
    assert info.status == "up"
    assert not info.workloads


def test_hw_delta_without_changes(config_manager, ansible_manager):
    enable_hardware(config_manager)
    hardware = FakeHardware()
    data = make_data(config_manager, running(), ansible_manager, hardware)

    first = data.retrieve_info().hardware
    assert first.cpu is not None
    assert first.hostname == "localhost"
    assert first.interfaces is not None
    assert first.system_vendor is not None

    second = data.retrieve_info().hardware
    assert second.cpu is None
    assert second.hostname == ""
    assert second.interfaces is None
    assert second.system_vendor is None
    assert hardware.mutable_calls == 2
    assert hardware.full_calls == 1


def test_hw_delta_hostname_change(config_manager, ansible_manager):
    enable_hardware(config_manager)
    hardware = FakeHardware()
    data = make_data(config_manager, running(), ansible_manager, hardware)
    data.retrieve_info()

    hardware.mutable = HardwareInfo(
        hostname="localhostNEW", interfaces=[Interface(ipv4_addresses=["127.0.0.1", "0.0.0.0"])]
    )
    info = data.retrieve_info().hardware
    assert info.cpu is None
    assert info.hostname == "localhostNEW"
    assert info.interfaces is None
    assert info.system_vendor is None


def test_hw_delta_interface_change(config_manager, ansible_manager):
    enable_hardware(config_manager)
    hardware = FakeHardware()
    data = make_data(config_manager, running(), ansible_manager, hardware)
    data.retrieve_info()
    data.retrieve_info()

    hardware.mutable = HardwareInfo(
        hostname="localhost",
        interfaces=[Interface(ipv4_addresses=["127.0.0.1", "0.0.0.0"], ipv6_addresses=["fe80::1"])],
    )
    info = data.retrieve_info().hardware
    assert info.cpu is None
    assert info.hostname == ""
    assert info.interfaces[0].ipv6_addresses == ["fe80::1"]
    assert info.system_vendor is None
    assert hardware.delta_calls == 2


def test_hw_delta_hostname_and_interfaces_change(config_manager, ansible_manager):
    enable_hardware(config_manager)
    hardware = FakeHardware()
    data = make_data(config_manager, running(), ansible_manager, hardware)
    data.retrieve_info()

    hardware.mutable = HardwareInfo(
        hostname="localhostFINAL",
        interfaces=[Interface(ipv4_addresses=["127.0.0.1", "0.0.0.0", "10.0.0.1"], ipv6_addresses=["fe80::1"])],
    )
    info = data.retrieve_info().hardware
    assert info.cpu is None
    assert info.hostname == "localhostFINAL"
    assert info.interfaces is not None and len(info.interfaces) == 1
    assert info.system_vendor is None


def test_hw_delta_disabled(config_manager, ansible_manager):
    enable_hardware(config_manager, SCOPE_FULL)
    hardware = FakeHardware()
    data = make_data(config_manager, running(), ansible_manager, hardware)

    first = data.retrieve_info().hardware
    assert first.cpu is not None
    assert first.hostname == "localhost"
    assert first.system_vendor is not None

    second = data.retrieve_info().hardware
    assert second.cpu is None
    assert second.hostname == "localhost"
    assert second.interfaces == [Interface(ipv4_addresses=["127.0.0.1", "0.0.0.0"])]
    assert second.system_vendor is None
    assert hardware.delta_calls == 0


def test_hw_info_disabled(config_manager, ansible_manager):
    config_manager.get_device_configuration().heartbeat.hardware_profile.include = False
    info = make_data(config_manager, running(), ansible_manager).retrieve_info()
    assert info.hardware is None


def test_start_creates_ticker(tmp_path):
    service = make_service(tmp_path, RecordingDispatcher(), FakeHardware(), period=60)
    assert service.has_started() is False
    service.start()
    try:
        assert service.has_started() is True
    finally:
        service.deregister()


def test_failing_sends_keep_full_hardware(tmp_path):
    client = RecordingDispatcher(fail=True)
    hardware = FakeHardware()
    service = make_service(tmp_path, client, hardware)
    for _ in range(3):
        with pytest.raises(ConnectionError):
            service.push_information()
    hw_list = client.hardware_list()
    assert len(hw_list) == 3
    first = hw_list[0]
    assert first.cpu is not None
    assert first.hostname == "localhost"
    assert first.interfaces is not None
    assert first.system_vendor is not None
    assert all(item == first for item in hw_list[1:])
    assert hardware.full_calls == 3
    assert hardware.delta_calls == 0


def test_successful_sends_then_deltas(tmp_path):
    client = RecordingDispatcher()
    hardware = FakeHardware()
    service = make_service(tmp_path, client, hardware)
    for _ in range(4):
        service.push_information()
    hw_list = client.hardware_list()
    first, second = hw_list[0], hw_list[1]
    assert first.cpu is not None
    assert first.hostname == "localhost"
    assert first.system_vendor is not None
    assert second == HardwareInfo()
    assert all(item == second for item in hw_list[2:])
    assert client.sent[0].directive == "heartbeat"


def test_empty_response_raises(tmp_path):
    client = RecordingDispatcher(empty=True)
    service = make_service(tmp_path, client, FakeHardware())
    with pytest.raises(EmptyResponseError, match="empty response received, host may not be reachable"):
        service.push_information()
    assert service.data.get_previous_hardware_info() is None


def test_unauthorized_registers_again_and_resends(tmp_path):
    client = RecordingDispatcher(status_code=401)
    registration = FakeRegistration()
    service = make_service(tmp_path, client, FakeHardware(), registration=registration)
    service.push_information()
    assert registration.calls == 1
    assert len(client.sent) == 2


def _message(period=None):
    heartbeat = HeartbeatConfiguration(period_seconds=period) if period is not None else None
    return DeviceConfigurationMessage(configuration=DeviceConfiguration(heartbeat=heartbeat), workloads=[])


def test_update_creates_ticker(tmp_path):
    service = make_service(tmp_path, RecordingDispatcher(), FakeHardware())
    assert service.has_started() is False
    service.update(_message(1))
    try:
        assert service.has_started() is True
    finally:
        service.deregister()


def test_update_with_invalid_config_still_starts(tmp_path):
    service = make_service(tmp_path, RecordingDispatcher(), FakeHardware())
    service.update(_message())
    try:
        assert service.has_started() is True
    finally:
        service.deregister()


def test_update_logs_period_change(tmp_path, caplog):
    service = make_service(tmp_path, RecordingDispatcher(), FakeHardware(), period=20)
    service.set_logger(logging.getLogger("test.heartbeat.change"))
    caplog.set_level(logging.DEBUG, logger="test.heartbeat.change")
    service.start()
    try:
        service.update(_message(30))
        assert "Heartbeat configuration update: periodSeconds changed from 20 to 30" in caplog.text
        assert service.has_started() is True
    finally:
        service.deregister()


def test_update_same_period_keeps_ticker(tmp_path, caplog):
    service = make_service(tmp_path, RecordingDispatcher(), FakeHardware(), period=20)
    service.set_logger(logging.getLogger("test.heartbeat.same"))
    caplog.set_level(logging.DEBUG, logger="test.heartbeat.same")
    service.start()
    try:
        service.update(_message(20))
        assert "periodSeconds changed from" not in caplog.text
    finally:
        service.deregister()


@pytest.mark.parametrize(
    "config, expected",
    [
        (None, 60),
        (DeviceConfiguration(), 60),
        (DeviceConfiguration(heartbeat=HeartbeatConfiguration(period_seconds=0)), 60),
        (DeviceConfiguration(heartbeat=HeartbeatConfiguration(period_seconds=-5)), 60),
        (DeviceConfiguration(heartbeat=HeartbeatConfiguration(period_seconds=7)), 7),
    ],
)
def test_get_interval(config, expected):
    assert get_interval(config) == expected


def test_init_does_not_start(tmp_path):
    service = make_service(tmp_path, RecordingDispatcher(), FakeHardware())
    service.init(DeviceConfigurationMessage(workloads=[Workload(name="w")]))
    assert service.has_started() is False
    assert str(service) == "heartbeat"