"""Centralized logging for the backend shell (buffering, routing, and CLI formatting)."""

from __future__ import annotations

import logging
import time
from collections import deque
from enum import Enum
from typing import Any, ClassVar, TypeAlias

from pydantic import BaseModel, ConfigDict
from rich.text import Text
from typing_extensions import override

from trainsim.models import LogChannel, LogEntry
from trainsim.utils import console

LogBuffer: TypeAlias = deque[LogEntry]


class ShellLogComponent(str, Enum):
    """Where a log originated (used for fine-grained filtering)."""

    SHELL = "shell"
    SUPERVISOR = "supervisor"
    PROCESS_CONTROL = "process_control"
    GATE = "gate"
    CLIENT = "client"
    BACKEND = "backend"


_COMPONENT_DEFAULT_CHANNEL: dict[ShellLogComponent, LogChannel] = {
    ShellLogComponent.SHELL: LogChannel.SHELL,
    ShellLogComponent.SUPERVISOR: LogChannel.SHELL,
    ShellLogComponent.PROCESS_CONTROL: LogChannel.SHELL,
    ShellLogComponent.GATE: LogChannel.SHELL,
    ShellLogComponent.CLIENT: LogChannel.SHELL,
    ShellLogComponent.BACKEND: LogChannel.BACKEND,
}


class _ShellLogState(BaseModel):
    model_config: ClassVar[ConfigDict] = ConfigDict(arbitrary_types_allowed=True)

    buffer: LogBuffer | None = None
    echo: bool = False
    configured: bool = False


_STATE = _ShellLogState()


def _now_timestamp(created: float | None = None) -> str:
    t = time.localtime(created if created is not None else time.time())
    return time.strftime("%Y-%m-%d %H:%M:%S", t)


class _BufferedLogHandler(logging.Handler):
    buffer_component: ShellLogComponent
    buffer_channel: LogChannel

    def __init__(self, *, channel: LogChannel, component: ShellLogComponent):
        super().__init__()
        self.buffer_channel = channel
        self.buffer_component = component

    @override
    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=_now_timestamp(record.created),
                level=record.levelname,
                channel=self.buffer_channel,
                component=self.buffer_component.value,
                content=self.format(record),
            )
            if _STATE.buffer is not None:
                _STATE.buffer.append(entry)
            if _STATE.echo:
                print_log_entry(entry)
        except Exception:
            self.handleError(record)


def configure_shell_logging(
    *, buffer: LogBuffer | None = None, echo: bool = True, level: int = logging.INFO
) -> LogBuffer:
    """Configure all shell loggers to write into a shared in-memory buffer.

    With echo enabled every entry is also printed to the rich console.
    """
    if buffer is None:
        buffer = deque(maxlen=10000)
    _STATE.buffer = buffer
    _STATE.echo = echo

    for component in ShellLogComponent:
        channel = _COMPONENT_DEFAULT_CHANNEL.get(component, LogChannel.SHELL)
        logger = logging.getLogger(f"trainsim.shell.{component.value}")
        logger.setLevel(level)
        logger.handlers.clear()
        handler = _BufferedLogHandler(channel=channel, component=component)
        handler.setFormatter(logging.Formatter("%(message)s"))
        logger.addHandler(handler)
        logger.propagate = False

    # httpx logs every request at INFO; one line per health poll is noise.
    logging.getLogger("httpx").setLevel(logging.WARNING)

    _STATE.configured = True
    return buffer


def get_logger(component: ShellLogComponent) -> logging.Logger:
    """Get a shell logger for a component (do not call stdlib logging directly)."""
    logger = logging.getLogger(f"trainsim.shell.{component.value}")
    if not _STATE.configured:
        if not logger.handlers:
            logger.addHandler(logging.NullHandler())
    return logger


def print_log_entry(
    entry: LogEntry | dict[str, Any],
    *,
    raw_output: bool = False,
) -> None:
    """Print a single log entry with `[shell]`/`[backend]` prefixes."""
    if isinstance(entry, dict):
        entry = LogEntry.model_validate(entry)

    if raw_output:
        print(entry.content)
        return

    prefix_style = "bright_blue" if entry.channel == LogChannel.SHELL else "yellow"
    content_style = "red" if entry.level in ("ERROR", "CRITICAL") else None

    ts = Text(entry.timestamp, style="dim")
    sep = Text(" | ")
    prefix = Text(f"[{entry.channel.value}]", style=prefix_style)
    content = Text(entry.content, style=content_style or "")
    console.print(ts + sep + prefix + sep + content)
