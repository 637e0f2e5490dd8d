"""Job events reported to the playbook dispatcher."""

from __future__ import annotations

import json
from dataclasses import dataclass, fields
from typing import Any

_HTML_ESCAPES = (
    ("<", "\\u003c"),
    (">", "\\u003e"),
    ("&", "\\u0026"),
    ("\u2028", "\\u2028"),
    ("\u2029", "\\u2029"),
)

_REQUIRED_FIELDS = ("counter", "end_line", "event", "start_line", "uuid")


def _sorted_value(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _sorted_value(value[key]) for key in sorted(value)}
    if isinstance(value, list):
        return [_sorted_value(item) for item in value]
    return value


def _dump(obj: Any) -> str:
    text = json.dumps(obj, separators=(",", ":"), ensure_ascii=False)
    for raw, escaped in _HTML_ESCAPES:
        text = text.replace(raw, escaped)
    return text


@dataclass
class EventDataRes:
    ansible_no_log: bool | None = None
    changed: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        if self.ansible_no_log is not None:
            result["_ansible_no_log"] = self.ansible_no_log
        if self.changed is not None:
            result["changed"] = self.changed
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventDataRes:
        return cls(ansible_no_log=data.get("_ansible_no_log"), changed=data.get("changed"))


_MAP_FIELDS = frozenset({"changed", "failures", "ignored", "ok", "skipped"})


@dataclass
class EventData:
    changed: dict[str, Any] | None = None
    crc_dispatcher_correlation_id: str | None = None
    crc_dispatcher_error_code: str | None = None
    crc_dispatcher_error_details: str | None = None
    failures: dict[str, Any] | None = None
    host: str | None = None
    ignored: dict[str, Any] | None = None
    is_conditional: bool | None = None
    name: str | None = None
    ok: dict[str, Any] | None = None
    play: str | None = None
    play_uuid: str | None = None
    playbook: str | None = None
    playbook_uuid: str | None = None
    res: EventDataRes | None = None
    skipped: dict[str, Any] | None = None
    task: str | None = None
    task_action: str | None = None
    task_args: str | None = None
    task_path: str | None = None
    task_uuid: str | None = None
    uuid: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the fields in wire order; unset values and empty maps are left out."""
        result: dict[str, Any] = {}
        for item in fields(self):
            value = getattr(self, item.name)
            if item.name in _MAP_FIELDS:
                if value:
                    result[item.name] = _sorted_value(value)
            elif isinstance(value, EventDataRes):
                result[item.name] = value.to_dict()
            elif value is not None:
                result[item.name] = value
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EventData:
        if not isinstance(data, dict):
            raise ValueError("event_data must be an object")
        kwargs: dict[str, Any] = {}
        for item in fields(cls):
            value = data.get(item.name)
            if value is None:
                continue
            if item.name in _MAP_FIELDS:
                kwargs[item.name] = dict(value)
            elif item.name == "res":
                kwargs[item.name] = EventDataRes.from_dict(value)
            else:
                kwargs[item.name] = value
        return cls(**kwargs)


@dataclass
class AnsibleRunnerJobEvent:
    counter: int = 0
    created: str | None = None
    end_line: int = 0
    event: str = ""
    event_data: EventData | None = None
    runner_ident: str | None = None
    start_line: int = 0
    stderr: Any = None
    stdout: Any = None
    uuid: str = ""

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {"counter": self.counter}
        if self.created is not None:
            result["created"] = self.created
        result["end_line"] = self.end_line
        result["event"] = self.event
        if self.event_data is not None:
            result["event_data"] = self.event_data.to_dict()
        if self.runner_ident is not None:
            result["runner_ident"] = self.runner_ident
        result["start_line"] = self.start_line
        if self.stderr is not None:
            result["stderr"] = _sorted_value(self.stderr)
        if self.stdout is not None:
            result["stdout"] = _sorted_value(self.stdout)
        result["uuid"] = self.uuid
        return result

    def to_json(self) -> str:
        """Serialise as compact JSON with HTML-sensitive characters escaped."""
        return _dump(self.to_dict())

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> AnsibleRunnerJobEvent:
        if not isinstance(data, dict):
            raise ValueError("job event must be an object")
        for name in _REQUIRED_FIELDS:
            if data.get(name) is None:
                raise ValueError(f"field {name}: required")
        event_data = data.get("event_data")
        return cls(
            counter=data["counter"],
            created=data.get("created"),
            end_line=data["end_line"],
            event=data["event"],
            event_data=EventData.from_dict(event_data) if event_data is not None else None,
            runner_ident=data.get("runner_ident"),
            start_line=data["start_line"],
            stderr=data.get("stderr"),
            stdout=data.get("stdout"),
            uuid=data["uuid"],
        )

    @classmethod
    def from_json(cls, text: str | bytes) -> AnsibleRunnerJobEvent:
        return cls.from_dict(json.loads(text))