"""Execution of playbooks received from the management service."""

from __future__ import annotations

import json
import logging
import os
import queue
import tempfile
import threading
import time
from dataclasses import dataclass, field, replace
from datetime import timedelta
from pathlib import Path
from typing import Any, Callable

from edgeworker.dispatcher import (
    AnsibleDispatcher,
    PlaybookResults,
    compose_dispatcher_message,
    parse_playbook_results,
)
from edgeworker.mapping import MappingRepository
from edgeworker.message import AnsibleRunnerJobEvent
from edgeworker.models import (
    EVENT_INFO_TYPE_WARN,
    Data,
    DeviceConfigurationMessage,
    EventInfo,
)

logger = logging.getLogger(__name__)

CRC_DISPATCHER_ATTRIBUTE = "crc_dispatcher_correlation_id"
RETURN_URL_ATTRIBUTE = "return_url"

NOT_INSTALLED = "ANSIBLE_NOT_INSTALLED"
UNDEFINED_ERROR = "UNDEFINED_ERROR"

DEFAULT_PENDING_TIMEOUT = 300.0
_NOT_FOUND_MARKER = "The command was not found or was not executable: ansible-playbook"

_RESULTS = "results"
_DONE = "done"

Runner = Callable[["PlaybookCommand", float], "str | bytes"]


@dataclass
class PlaybookCommand:
    """How a playbook is to be run: local connection, JSON output."""

    connection: str = "local"
    inventory: str = "127.0.0.1,"
    stdout_callback: str = "json"
    playbooks: list[str] = field(default_factory=list)


class PlaybookTimeoutError(TimeoutError):
    """Raised when a playbook does not complete within its timeout."""


def _format_metadata(metadata: dict[str, str]) -> str:
    return "map[" + " ".join(f"{key}:{metadata[key]}" for key in sorted(metadata)) + "]"


def missing_attribute_error(attribute: str, metadata: dict[str, str]) -> ValueError:
    """Return the error reported when a required metadata attribute is absent."""
    return ValueError(
        f"missing attribute {attribute} in message metadata {_format_metadata(metadata)}"
    )


def parse_failure(event: AnsibleRunnerJobEvent) -> tuple[str, Any]:
    """Return the error code and details describing a failure event."""
    details = event.stdout
    code = UNDEFINED_ERROR
    if details is not None and _NOT_FOUND_MARKER in str(details):
        code = NOT_INSTALLED
    return code, details


def _seconds(timeout: float | timedelta) -> float:
    if isinstance(timeout, timedelta):
        return timeout.total_seconds()
    return float(timeout)


def _combined_message(errors: list[BaseException]) -> str:
    plural = "s" if len(errors) > 1 else ""
    lines = "".join(f"\t* {error}\n" for error in errors)
    return f"{len(errors)} error{plural} occurred:\n{lines}\n"


class AnsibleManager:
    """Runs playbooks and reports their events to the dispatcher.

    The runner is called as runner(command, timeout_seconds) and returns the
    JSON output of the run. When the run fails it raises; an ``output``
    attribute on the exception, if present, is still parsed for results.
    """

    def __init__(self, dispatcher_client: Any, config_dir: str | os.PathLike, runner: Runner) -> None:
        try:
            self.mapping_repository = MappingRepository(config_dir)
        except (OSError, ValueError) as err:
            raise RuntimeError(
                f"ansible manager cannot initialize mapping repository: {err}"
            ) from err
        if not callable(runner):
            raise TypeError("a playbook runner is required")
        self._runner = runner
        self._dispatcher_client = dispatcher_client
        self.ansible_dispatcher = AnsibleDispatcher("")
        self._lock = threading.Lock()
        self._events: list[EventInfo] = []
        self._running = 0
        self._idle = threading.Condition()

    def get_playbook_command(self) -> PlaybookCommand:
        return PlaybookCommand()

    def _begin(self) -> None:
        with self._idle:
            self._running += 1

    def _end(self) -> None:
        with self._idle:
            self._running -= 1
            if self._running == 0:
                self._idle.notify_all()

    def _run(self, command: PlaybookCommand, timeout: float) -> tuple[Any, BaseException | None]:
        try:
            return self._runner(command, timeout), None
        except Exception as err:  # the run failed, but may still have produced output
            return getattr(err, "output", b"") or b"", err

    def handle_playbook(
        self, playbook_cmd: PlaybookCommand, data: Data, timeout: float | timedelta
    ) -> None:
        """Run the playbook carried by the message and send its events back.

        Raises ValueError for an invalid message and PlaybookTimeoutError when
        the run does not complete in time.
        """
        if not data.content:
            raise ValueError(f"empty message. messageID: {data.message_id}")
        message = DeviceConfigurationMessage()
        try:
            message = DeviceConfigurationMessage.from_dict(json.loads(data.content))
        except (ValueError, TypeError) as err:
            logger.error("Error while converting message content to map %s", err)

        payload = message.ansible_playbook
        logger.info("Handle Playbook Content message: %s", payload)
        if not payload:
            raise ValueError(
                f"missing playbook string in message with messageID: {data.message_id}"
            )
        metadata = data.metadata or {}
        if CRC_DISPATCHER_ATTRIBUTE not in metadata:
            raise missing_attribute_error(CRC_DISPATCHER_ATTRIBUTE, metadata)
        if RETURN_URL_ATTRIBUTE not in metadata:
            raise missing_attribute_error(RETURN_URL_ATTRIBUTE, metadata)
        correlation_id = metadata[CRC_DISPATCHER_ATTRIBUTE]
        return_url = metadata[RETURN_URL_ATTRIBUTE]

        playbook_file = os.path.join(
            tempfile.gettempdir(), f"ansible_playbook_{data.message_id}.yml"
        )
        try:
            fd = os.open(playbook_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
        except OSError as err:
            raise OSError(
                f"cannot create ansible playbook yaml file {playbook_file}. Error: {err}"
            ) from err

        try:
            self.ansible_dispatcher.add_runner_job_event(
                self.ansible_dispatcher.executor_on_start(correlation_id, "")
            )
            playbook_cmd.playbooks = [playbook_file]
            seconds = _seconds(timeout)
            deadline = time.monotonic() + seconds
            mod_time = os.stat(playbook_file).st_mtime_ns
            outcomes: queue.Queue = queue.Queue()

            self._begin()
            try:
                threading.Thread(
                    target=self._exec_playbook,
                    args=(outcomes, playbook_cmd, seconds, return_url, mod_time),
                    daemon=True,
                ).start()
                while True:
                    remaining = max(deadline - time.monotonic(), 0.0)
                    try:
                        kind, value = outcomes.get(timeout=remaining)
                    except queue.Empty:
                        raise PlaybookTimeoutError(
                            f"execution timeout reached for playbook in messageID {data.message_id}"
                        ) from None
                    if kind == _DONE:
                        logger.info(
                            "ansible playbook execution completed of messageID %s", data.message_id
                        )
                        if value is not None:
                            self._report_failure(data.message_id, correlation_id, value)
                        return None
                    logger.debug("posting events for messageID %s", data.message_id)
                    try:
                        self._send_events(value, return_url, data.message_id, playbook_file)
                    except Exception as err:
                        logger.error(
                            "cannot post ansible playbook results of message %s: %s",
                            data.message_id,
                            err,
                        )
            finally:
                self._end()
        finally:
            Path(playbook_file).unlink(missing_ok=True)

    def _report_failure(self, message_id: str, correlation_id: str, error: BaseException) -> None:
        logger.error(
            "ansible playbook execution completed with error. [MessageID: %s, Error: %s]",
            message_id,
            error,
        )
        events = self.ansible_dispatcher.msg_list
        code, details = parse_failure(events[-1])
        self.ansible_dispatcher.add_runner_job_event(
            self.ansible_dispatcher.executor_on_failed(
                correlation_id, "", code, "" if details is None else str(details)
            )
        )

    def _send_events(
        self,
        results: PlaybookResults | None,
        return_url: str,
        response_to: str,
        playbook_file: str,
    ) -> None:
        if results is None or results.plays is None:
            raise ValueError(f"cannot compose empty message for {response_to}")
        events = self.ansible_dispatcher.add_event(playbook_file, results)
        message = compose_dispatcher_message(events, return_url, response_to)
        logger.info("Message to be sent as reply: %s", message.content.decode("utf-8"))
        self._dispatcher_client.send(message)

    def _exec_playbook(
        self,
        outcomes: queue.Queue,
        command: PlaybookCommand,
        timeout: float,
        reference: str,
        mod_time: int,
    ) -> None:
        try:
            if self.mapping_repository.exists(mod_time):
                raise RuntimeError(f"playbook of messageID {reference} is already in execution")
            content = Path(command.playbooks[0]).read_bytes()
            self.mapping_repository.add(content, mod_time)
            output, run_error = self._run(command, timeout)
            if run_error is not None:
                logger.warning(
                    "playbook executed with errors. messageID: %s, Error: %s", reference, run_error
                )
            results = parse_playbook_results(output)
        except Exception as err:
            logger.error("playbook execution failed. MessageID: %s, Error: %s", reference, err)
            outcomes.put((_DONE, err))
            return

        outcomes.put((_RESULTS, results))
        try:
            self.mapping_repository.remove(content)
        except OSError as err:
            logger.error("cannot remove pending playbook. MessageID: %s, Error: %s", reference, err)
        outcomes.put((_DONE, run_error))

    def _exec_playbook_sync(self, command: PlaybookCommand, timeout: float) -> BaseException | None:
        """Run a stored playbook; raise when nothing usable came out, else return the run error."""
        try:
            content = Path(command.playbooks[0]).read_bytes()
        except OSError:
            logger.error("cannot read pending playbook file %s", command.playbooks[0])
            raise
        logger.debug("Executing %s", command.playbooks)
        output, run_error = self._run(command, timeout)
        if run_error is not None:
            logger.warning(
                "pending playbook executed with errors. playbookFile: %s, Error: %s",
                command.playbooks,
                run_error,
            )
        parse_playbook_results(output)
        try:
            self.mapping_repository.remove(content)
        except OSError as err:
            logger.error("cannot remove pending playbook. Error: %s", err)
        return run_error

    def execute_pending_playbooks(self) -> None:
        """Run playbooks left over from an earlier run, oldest first."""
        errors: list[BaseException] = []
        for _, playbook_path in sorted(self.mapping_repository.get_all().items()):
            command = self.get_playbook_command()
            command.playbooks = [playbook_path]
            try:
                run_error = self._exec_playbook_sync(command, DEFAULT_PENDING_TIMEOUT)
            except (OSError, ValueError) as err:
                logger.error("%s", err)
                raise
            if run_error is not None:
                logger.error("%s", run_error)
                errors.append(run_error)
        if errors:
            message = _combined_message(errors)
            self.add_to_event_queue(
                EventInfo(message=message, reason="Failed", type=EVENT_INFO_TYPE_WARN)
            )
            raise RuntimeError(message)

    def add_to_event_queue(self, event: EventInfo) -> None:
        with self._lock:
            self._events.append(event)

    def wait_playbook_completion(self) -> None:
        """Block until no playbook is being handled."""
        with self._idle:
            self._idle.wait_for(lambda: self._running == 0)

    def pop_events(self) -> list[EventInfo]:
        """Return copies of the queued events and empty the queue."""
        with self._lock:
            events = [replace(event) for event in self._events]
            self._events = []
        return events