# edgeworker

`edgeworker` is a library of parts for an edge-device worker. It keeps the
device configuration on disk and notifies observers when it changes. It
builds and sends heartbeats with workload status and hardware details. It
syncs workload data paths through a pluggable file synchroniser. It also
turns playbook results into runner job events for a dispatcher.

The package uses only the standard library.

## Installation

```
pip install .
```

To install the test dependencies too:

```
pip install .[test]
```

## Modules

### `edgeworker.models`

This module defines the dataclasses that are exchanged with the management
service:

- configuration types: `DeviceConfigurationMessage`, `DeviceConfiguration`,
  `HeartbeatConfiguration`, `HardwareProfileConfiguration`,
  `StorageConfiguration`, `S3StorageConfiguration`, `Workload`,
  `DataConfiguration`, `DataPath`, `Secret`
- hardware types: `HardwareInfo`, `CPU`, `SystemVendor`, `Interface`
- heartbeat types: `Heartbeat`, `WorkloadStatus`, `EventInfo`
- dispatcher envelopes: `Data`, `Response`

Every class has `to_dict()` and `from_dict()`. `to_dict()` leaves out fields
that are `None`. Byte fields such as `Data.content` are written as base64.
`default_device_configuration_message()` returns a new default configuration:
a heartbeat every 60 seconds and a hardware profile with its defaults.

### `edgeworker.configuration`

`ConfigurationManager(data_dir)` reads `device-config.json` from `data_dir`.

- If the file is missing, the manager uses the default configuration and
  treats it as the initial configuration.
- If the file is not valid JSON, the manager falls back to the default
  configuration.

`update(message)` notifies each registered `Observer`, writes the file and
keeps the new message. It skips this work when the configuration, the
workloads and the secrets are all unchanged. Secrets are compared without
regard to order, as `is_equal_unordered_secret_lists` does. During the initial
configuration the update always runs.

`update(message)` raises `ConfigurationUpdateError` in two cases:

- An observer failed. The new configuration is still saved and kept.
- The file could not be written. The new configuration is not kept.

`register_observer(observer)` calls `observer.init(...)` with the current
configuration. Errors from that call are logged, and the observer is still
registered. `deregister()` removes the configuration file.
`get_data_transfer_interval()` returns 15 seconds.

### `edgeworker.hardware`

`HardwareInfoProvider` must be initialised with `init(dependencies)` before
any use. Otherwise its methods raise `HardwareNotInitializedError`.

The dependency object must provide:

- `cpu_info()`, returning `(architecture, model name)`
- `system_vendor()`
- `hostname()`
- `interfaces()`, whose items have `ipv4_addresses` and `ipv6_addresses`

With `init(None)` the provider reads the running system instead: `/proc`,
`/sys/class/dmi/id` and the network interfaces. The provider has these
methods:

- `get_hardware_immutable_information(info)` fills in the CPU and the system
  vendor.
- `create_hardware_mutable_information()` collects the hostname and every
  interface that has at least one address.
- `get_hardware_information()` does both.

`get_mutable_hardware_info_delta(previous, new)` returns a `HardwareInfo`. It
holds only the hostname and the interfaces that changed.

### `edgeworker.mapping`

`MappingRepository(config_dir)` stores the content of each pending playbook
in `config_dir`, in a file named by its SHA-256. It records the file by
modification time in `playbook-mapping.json`. Modification times are given as
a `datetime` or as nanoseconds since the epoch. `get_all()` returns the stored
paths, oldest first, keyed by position. The other methods are `add`, `remove`,
`exists`, `get_mod_time`, `get_file_path`, `size`, `persist` and
`remove_mapping_file`.

### `edgeworker.message` and `edgeworker.dispatcher`

`AnsibleRunnerJobEvent`, `EventData` and `EventDataRes` model runner job
events. `AnsibleRunnerJobEvent.to_json()` writes compact JSON with `<`, `>`
and `&` escaped. `AnsibleRunnerJobEvent.from_dict()` / `from_json()` raise
`ValueError` when `counter`, `end_line`, `event`, `start_line` or `uuid` is
missing.

`parse_playbook_results()` parses the output of the JSON stdout callback into
`PlaybookResults`. `AnsibleDispatcher(device_id)` builds the following events:

- `executor_on_start`
- `executor_on_failed`
- `playbook_on_start`
- `playbook_on_play_start`
- `playbook_on_task_start`
- `runner_on_ok`
- `runner_on_failed`
- `runner_on_skipped`

`add_event()` turns a whole result into an ordered event list. Repeated task
ids get a `_N` suffix, and every play ends with a `playbook_on_stats` event.

- `create_message(events)` joins the events' JSON with newlines.
- `compose_dispatcher_message(events, return_url, response_to)` wraps them in
  a `Data` addressed to the return URL.

### `edgeworker.ansible_manager`

`AnsibleManager(dispatcher_client, config_dir, runner)` runs playbooks through
`runner(command, timeout_seconds)`. The runner returns the JSON callback
output of the run.

`handle_playbook(command, data, timeout)` works as follows:

1. It checks the message. The message needs an `ansible_playbook` payload and
   the metadata `crc_dispatcher_correlation_id` and `return_url`.
2. It writes the playbook to the temporary directory and runs it.
3. It sends the resulting events with `dispatcher_client.send(data)`.
4. If the run failed, it adds an `executor_on_failed` event.

`handle_playbook` raises `ValueError` for an invalid message and
`PlaybookTimeoutError` when the timeout runs out.

`execute_pending_playbooks()` runs the playbooks left in the mapping
repository. If some of them fail, it queues a warning `EventInfo` and raises.
`pop_events()` returns the queued events and empties the queue.

### `edgeworker.datatransfer`

`Monitor(workloads, config, sync_factory)` uses these objects:

- `workloads` provides `get_device_id()`, `list_workloads()` and
  `get_exported_host_path(name)`.
- `config` is a `ConfigurationManager`.
- `sync_factory` builds a `FileSync` from an `S3StorageConfiguration`.

Every 15 seconds the monitor pushes each running workload's egress paths and
pulls its ingress paths, and records the time of each successful sync.
`force_sync()` runs a sync straight away. Failures are gathered into a
`SyncError`. As an observer, the monitor rebuilds its synchroniser whenever S3
storage is configured.

### `edgeworker.heartbeat`

`HeartbeatService` sends a heartbeat message through `dispatcher_client.send`
every configured period. The default period is 60 seconds.

Each heartbeat holds the workload statuses, the events and the upgrade status.
When the hardware profile has `include` set, it also holds hardware
information:

- The first heartbeat carries the full hardware information.
- Later heartbeats carry mutable information only. With scope `delta`, they
  carry only what changed.

An empty response raises `EmptyResponseError`. A response with status code
401 makes the service call `registration.register_device()` and resend.
`update(config)` restarts the ticker only when the period changes.

## Example

```python
import tempfile

from edgeworker.configuration import ConfigurationManager
from edgeworker.models import default_device_configuration_message

data_dir = tempfile.mkdtemp()
manager = ConfigurationManager(data_dir)
message = default_device_configuration_message()
message.version = "1"
manager.update(message)
print(manager.get_configuration_version())  # 1
```

## What the package does not do

This is a library, not a running service. It has:

- no command to start,
- no connection to a message dispatcher,
- no registration of the device,
- no workload (container) manager,
- no operating-system upgrade handling.

The caller supplies these as plain objects: `dispatcher_client`,
`workload_manager`, `registration` and `os_info`. The package does not run
playbooks itself; the `runner` given to `AnsibleManager` does. It contains no
object-storage client either; `Monitor` syncs only through the `FileSync`
objects returned by the given `sync_factory`.

## Running the tests

```
pytest
```