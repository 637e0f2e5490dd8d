"""Job events describing playbook runs, composed for the playbook dispatcher."""

from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterable

from edgeworker.message import AnsibleRunnerJobEvent, EventData, EventDataRes
from edgeworker.models import Data


@dataclass
class TaskHostResult:
    """Outcome of one task on one host."""

    action: str = ""
    changed: bool = False
    msg: Any = None
    ansible_facts: dict[str, Any] | None = None
    stdout: Any = None
    stdout_lines: list[str] | None = None
    stderr: Any = None
    stderr_lines: list[str] | None = None
    cmd: Any = None
    failed: bool = False
    skipped: bool = False
    unreachable: bool = False


@dataclass
class TaskItem:
    """Identity and timing of a task."""

    name: str = ""
    id: str = ""
    start: str = ""
    end: str = ""


@dataclass
class PlayTask:
    task: TaskItem = field(default_factory=TaskItem)
    hosts: dict[str, TaskHostResult] = field(default_factory=dict)


@dataclass
class PlayInfo:
    """Identity and timing of a play."""

    name: str = ""
    id: str = ""
    start: str = ""
    end: str = ""


@dataclass
class Play:
    play: PlayInfo = field(default_factory=PlayInfo)
    tasks: list[PlayTask] = field(default_factory=list)


@dataclass
class HostStats:
    changed: int = 0
    failures: int = 0
    ignored: int = 0
    ok: int = 0
    rescued: int = 0
    skipped: int = 0
    unreachable: int = 0


@dataclass
class PlaybookResults:
    """Parsed output of the JSON stdout callback."""

    plays: list[Play] | None = None
    stats: dict[str, HostStats] = field(default_factory=dict)


def _mapping(value: Any, what: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValueError(f"{what} must be an object")
    return value


def _parse_duration(data: dict[str, Any]) -> tuple[str, str]:
    duration = _mapping(data.get("duration"), "duration")
    return duration.get("start") or "", duration.get("end") or ""


def _parse_host_result(data: Any) -> TaskHostResult:
    data = _mapping(data, "host result")
    return TaskHostResult(
        action=data.get("action") or "",
        changed=bool(data.get("changed", False)),
        msg=data.get("msg"),
        ansible_facts=data.get("ansible_facts"),
        stdout=data.get("stdout"),
        stdout_lines=data.get("stdout_lines"),
        stderr=data.get("stderr"),
        stderr_lines=data.get("stderr_lines"),
        cmd=data.get("cmd"),
        failed=bool(data.get("failed", False)),
        skipped=bool(data.get("skipped", False)),
        unreachable=bool(data.get("unreachable", False)),
    )


def _parse_task(data: Any) -> PlayTask:
    data = _mapping(data, "task")
    item = _mapping(data.get("task"), "task item")
    start, end = _parse_duration(item)
    hosts = _mapping(data.get("hosts"), "hosts")
    return PlayTask(
        task=TaskItem(name=item.get("name") or "", id=item.get("id") or "", start=start, end=end),
        hosts={name: _parse_host_result(result) for name, result in hosts.items()},
    )


def _parse_play(data: Any) -> Play:
    data = _mapping(data, "play")
    info = _mapping(data.get("play"), "play info")
    start, end = _parse_duration(info)
    return Play(
        play=PlayInfo(name=info.get("name") or "", id=info.get("id") or "", start=start, end=end),
        tasks=[_parse_task(task) for task in data.get("tasks") or []],
    )


def _parse_stats(data: Any) -> HostStats:
    data = _mapping(data, "stats")
    return HostStats(
        **{name: int(data.get(name, 0)) for name in HostStats.__dataclass_fields__}
    )


def parse_playbook_results(data: str | bytes | dict[str, Any]) -> PlaybookResults:
    """Parse the JSON stdout callback output; raise ValueError when it is malformed."""
    if isinstance(data, (str, bytes, bytearray)):
        data = json.loads(data)
    if not isinstance(data, dict):
        raise ValueError("playbook results must be a JSON object")
    plays = data.get("plays")
    return PlaybookResults(
        plays=[_parse_play(play) for play in plays] if plays is not None else None,
        stats={host: _parse_stats(stats) for host, stats in _mapping(data.get("stats"), "stats").items()},
    )


def hosts_string(tasks: Iterable[PlayTask]) -> str:
    """Return the comma-joined host names of the last task."""
    result = ""
    for task in tasks:
        result = ",".join(task.hosts)
    return result


def count_occurrences(tasks: Iterable[PlayTask]) -> dict[str, int]:
    """Count how many tasks share each task id."""
    counts: dict[str, int] = {}
    for task in tasks:
        counts[task.task.id] = counts.get(task.task.id, 0) + 1
    return counts


def playbook_on_stats(
    runner_id: str,
    playbook_uuid: str,
    counter: int,
    created: str,
    stats: dict[str, HostStats],
) -> AnsibleRunnerJobEvent:
    changed: dict[str, Any] = {}
    ok: dict[str, Any] = {}
    failures: dict[str, Any] = {}
    for host, host_stats in stats.items():
        changed[host] = host_stats.changed
        ok[host] = host_stats.ok
        failures[host] = host_stats.failures
    return AnsibleRunnerJobEvent(
        event="playbook_on_stats",
        runner_ident=runner_id,
        created=created,
        counter=counter,
        event_data=EventData(
            playbook_uuid=playbook_uuid, changed=changed, ok=ok, failures=failures
        ),
    )


def create_message(events: Iterable[AnsibleRunnerJobEvent]) -> bytes:
    """Serialise events as newline-separated JSON documents."""
    return "\n".join(event.to_json() for event in events).encode("utf-8")


def compose_dispatcher_message(
    events: Iterable[AnsibleRunnerJobEvent], return_url: str, response_to: str
) -> Data:
    """Wrap the events in a message addressed to the return URL."""
    return Data(
        message_id=str(uuid.uuid4()),
        directive=return_url,
        response_to=response_to,
        metadata={},
        content=create_message(events),
    )


class AnsibleDispatcher:
    """Accumulates job events for one device."""

    def __init__(self, device_id: str) -> None:
        self.device_id = device_id
        self._msg_list: list[AnsibleRunnerJobEvent] = []

    @property
    def msg_list(self) -> list[AnsibleRunnerJobEvent]:
        return list(self._msg_list)

    def add_runner_job_event(self, event: AnsibleRunnerJobEvent) -> list[AnsibleRunnerJobEvent]:
        self._msg_list.append(event)
        return self.msg_list

    def add_event(
        self, playbook_filename: str, results: PlaybookResults
    ) -> list[AnsibleRunnerJobEvent]:
        """Turn playbook results into job events, store them and return all events."""
        self._msg_list.extend(self._transform(playbook_filename, results))
        return self.msg_list

    def _transform(
        self, playbook_filename: str, results: PlaybookResults
    ) -> list[AnsibleRunnerJobEvent]:
        events: list[AnsibleRunnerJobEvent] = []
        counter = 0
        duplicate_task_count: dict[str, int] = {}
        for play in results.plays or []:
            if counter == 1:
                events.append(self.playbook_on_start(playbook_filename, counter, play))
            counter += 1
            play_start = self.playbook_on_play_start(playbook_filename, counter, play)
            events.append(play_start)
            host = play_start.event_data.host
            task_uuids = count_occurrences(play.tasks)
            for task in play.tasks:
                for host_result in task.hosts.values():
                    counter += 1
                    task_start = self.playbook_on_task_start(
                        self.device_id,
                        playbook_filename,
                        play_start.uuid,
                        counter,
                        host,
                        task.task,
                        host_result,
                        task_uuids,
                        duplicate_task_count,
                    )
                    events.append(task_start)
                    counter += 1
                    if host_result.failed:
                        runner = self.runner_on_failed
                    elif host_result.skipped:
                        runner = self.runner_on_skipped
                    else:
                        runner = self.runner_on_ok
                    events.append(
                        runner(
                            self.device_id,
                            playbook_filename,
                            task_start.uuid,
                            counter,
                            host,
                            task.task,
                            host_result,
                        )
                    )
            counter += 1
            events.append(
                playbook_on_stats(
                    self.device_id, playbook_filename, counter, play.play.end, results.stats
                )
            )
        return events

    @staticmethod
    def _runner_event(
        event: str,
        runner_id: str,
        playbook_filename: str,
        playbook_uuid: str,
        counter: int,
        host: str | None,
        task: TaskItem,
        host_result: TaskHostResult,
        with_stderr: bool,
    ) -> AnsibleRunnerJobEvent:
        return AnsibleRunnerJobEvent(
            event=event,
            runner_ident=runner_id,
            created=task.start,
            counter=counter,
            stdout=host_result.stdout,
            stderr=host_result.stderr if with_stderr else None,
            event_data=EventData(
                playbook=playbook_filename,
                playbook_uuid=playbook_uuid,
                host=host,
                task_uuid=task.id,
                task=task.name,
                task_action=host_result.action,
                res=EventDataRes(changed=host_result.changed),
                uuid=task.id,
            ),
            uuid=task.id,
        )

    def runner_on_ok(
        self, runner_id, playbook_filename, playbook_uuid, counter, host, task, host_result
    ) -> AnsibleRunnerJobEvent:
        return self._runner_event(
            "v2_runner_on_ok", runner_id, playbook_filename, playbook_uuid,
            counter, host, task, host_result, with_stderr=False,
        )

    def runner_on_failed(
        self, runner_id, playbook_filename, playbook_uuid, counter, host, task, host_result
    ) -> AnsibleRunnerJobEvent:
        return self._runner_event(
            "v2_runner_on_failed", runner_id, playbook_filename, playbook_uuid,
            counter, host, task, host_result, with_stderr=True,
        )

    def runner_on_skipped(
        self, runner_id, playbook_filename, playbook_uuid, counter, host, task, host_result
    ) -> AnsibleRunnerJobEvent:
        return self._runner_event(
            "v2_runner_on_skipped", runner_id, playbook_filename, playbook_uuid,
            counter, host, task, host_result, with_stderr=True,
        )

    def playbook_on_task_start(
        self,
        runner_id: str,
        playbook_filename: str,
        playbook_uuid: str,
        counter: int,
        host: str | None,
        task: TaskItem,
        host_result: TaskHostResult,
        task_uuids: dict[str, int],
        duplicate_task_count: dict[str, int],
    ) -> AnsibleRunnerJobEvent:
        """Build a task start event; repeated task ids get a counter suffix."""
        task_uuid = task.id
        if task_uuids.get(task_uuid, 0) > 1:
            # Repeated ids come from the free strategy (or serial: 1); suffix them
            # so that each event can still be tracked separately.
            duplicate_task_count[task_uuid] = duplicate_task_count.get(task_uuid, 0) + 1
            task_uuid = f"{task_uuid}_{duplicate_task_count[task_uuid]}"
            task.id = task_uuid
        return AnsibleRunnerJobEvent(
            event="playbook_on_task_start",
            runner_ident=runner_id,
            created=task.start,
            counter=counter,
            stdout=host_result.stdout,
            event_data=EventData(
                playbook=playbook_filename,
                playbook_uuid=playbook_uuid,
                host=host,
                task_uuid=task_uuid,
                task=task.name,
                task_action=host_result.action,
                uuid=task_uuid,
            ),
            uuid=task_uuid,
        )

    def playbook_on_play_start(
        self, playbook_filename: str, counter: int, play: Play
    ) -> AnsibleRunnerJobEvent:
        return AnsibleRunnerJobEvent(
            event="playbook_on_play_start",
            runner_ident=self.device_id,
            counter=counter,
            created=play.play.start,
            event_data=EventData(
                playbook_uuid=play.play.id,
                playbook=playbook_filename,
                host=hosts_string(play.tasks),
                uuid=play.play.id,
            ),
            uuid=play.play.id,
        )

    def playbook_on_start(
        self, playbook_filename: str, counter: int, play: Play
    ) -> AnsibleRunnerJobEvent:
        event_uuid = str(uuid.uuid4())
        return AnsibleRunnerJobEvent(
            event="playbook_on_start",
            created=play.play.start,
            runner_ident=self.device_id,
            counter=counter,
            event_data=EventData(
                playbook_uuid=event_uuid,
                playbook=playbook_filename,
                host=hosts_string(play.tasks),
                uuid=play.play.id,
            ),
            uuid=event_uuid,
        )

    def executor_on_start(self, correlation_id: str, stdout: str) -> AnsibleRunnerJobEvent:
        """Build the start event the cloud connector requires."""
        return AnsibleRunnerJobEvent(
            event="executor_on_start",
            uuid=str(uuid.uuid4()),
            counter=-1,
            stdout=stdout,
            start_line=0,
            end_line=0,
            event_data=EventData(crc_dispatcher_correlation_id=correlation_id),
        )

    def executor_on_failed(
        self, correlation_id: str, stdout: str, error_code: str, error_details: str
    ) -> AnsibleRunnerJobEvent:
        """Build the failure event the cloud connector requires."""
        return AnsibleRunnerJobEvent(
            event="executor_on_failed",
            uuid=str(uuid.uuid4()),
            counter=-1,
            stdout=stdout,
            start_line=0,
            end_line=0,
            event_data=EventData(
                crc_dispatcher_correlation_id=correlation_id,
                crc_dispatcher_error_code=error_code,
                crc_dispatcher_error_details=error_details,
            ),
        )