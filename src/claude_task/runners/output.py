"""Separation of container setup output from agent output."""

from __future__ import annotations

import codecs
from dataclasses import dataclass
from enum import Enum
from typing import Callable

START_MARKER = "=== CLAUDE_OUTPUT_START ==="
END_MARKER = "=== CLAUDE_OUTPUT_END ==="


class Phase(str, Enum):
    SETUP = "setup"
    AGENT = "agent"


class Stream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


@dataclass(frozen=True, slots=True)
class OutputChunk:
    phase: Phase
    stream: Stream
    text: str


class OutputDemultiplexer:
    """Tags each output line as setup or agent output.

    The container entrypoint writes :data:`START_MARKER` right before it execs
    the agent and optionally :data:`END_MARKER` afterwards. Marker lines are
    consumed. Lines after the end marker go back to the setup phase. When no
    start marker ever appears, everything is reported as agent output by
    :meth:`finish`.
    """

    def __init__(self, on_chunk: Callable[[OutputChunk], None] | None = None) -> None:
        self._on_chunk = on_chunk
        self._phase = Phase.SETUP
        self._seen_start = False
        self._partial: dict[Stream, str] = {Stream.STDOUT: "", Stream.STDERR: ""}
        self._decoders = {stream: codecs.getincrementaldecoder("utf-8")(errors="replace") for stream in Stream}
        self._setup: list[str] = []
        self._agent: dict[Stream, list[str]] = {Stream.STDOUT: [], Stream.STDERR: []}

    @property
    def saw_start_marker(self) -> bool:
        return self._seen_start

    def feed(self, data: bytes | str, stream: Stream = Stream.STDOUT) -> None:
        text = self._decoders[stream].decode(data) if isinstance(data, bytes) else data
        buffered = self._partial[stream] + text
        *lines, self._partial[stream] = buffered.split("\n")
        for line in lines:
            self._handle_line(line + "\n", stream)

    def finish(self) -> None:
        for stream, decoder in self._decoders.items():
            self._partial[stream] += decoder.decode(b"", final=True)
        for stream, remainder in self._partial.items():
            if remainder:
                self._handle_line(remainder, stream)
            self._partial[stream] = ""
        if not self._seen_start and self._setup:
            self._agent[Stream.STDOUT][:0] = self._setup
            self._setup = []

    def _handle_line(self, line: str, stream: Stream) -> None:
        stripped = line.strip()
        if stripped == START_MARKER:
            self._seen_start = True
            self._phase = Phase.AGENT
            return
        if stripped == END_MARKER and self._phase is Phase.AGENT:
            self._phase = Phase.SETUP
            return

        if self._phase is Phase.AGENT:
            self._agent[stream].append(line)
        else:
            self._setup.append(line)
        if self._on_chunk is not None:
            self._on_chunk(OutputChunk(self._phase, stream, line))

    @property
    def agent_output(self) -> str:
        return "".join(self._agent[Stream.STDOUT])

    @property
    def agent_stderr(self) -> str:
        return "".join(self._agent[Stream.STDERR])

    @property
    def setup_output(self) -> str:
        return "".join(self._setup)


__all__ = ["END_MARKER", "OutputChunk", "OutputDemultiplexer", "Phase", "START_MARKER", "Stream"]
