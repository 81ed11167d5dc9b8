from __future__ import annotations

from claude_task.runners import OutputChunk, OutputDemultiplexer, Phase, Stream
from claude_task.runners.output import END_MARKER, START_MARKER


def test_markers_split_setup_from_agent_output() -> None:
    chunks: list[OutputChunk] = []
    demux = OutputDemultiplexer(chunks.append)

    demux.feed(f"installing deps\n{START_MARKER}\nhello ".encode())
    demux.feed(b"world\n")
    demux.feed("warning: slow\n", Stream.STDERR)
    demux.feed(f"{END_MARKER}\ncleanup done")
    demux.finish()

    assert demux.saw_start_marker
    assert demux.setup_output == "installing deps\ncleanup done"
    assert demux.agent_output == "hello world\n"
    assert demux.agent_stderr == "warning: slow\n"
    assert [chunk.phase for chunk in chunks] == [Phase.SETUP, Phase.AGENT, Phase.AGENT, Phase.SETUP]
    assert all(START_MARKER not in chunk.text for chunk in chunks)


def test_without_marker_everything_is_agent_output() -> None:
    demux = OutputDemultiplexer()
    demux.feed("line one\nline two")
    demux.finish()

    assert not demux.saw_start_marker
    assert demux.agent_output == "line one\nline two"
    assert demux.setup_output == ""


def test_end_marker_before_start_is_ordinary_setup_output() -> None:
    demux = OutputDemultiplexer()
    demux.feed(f"{END_MARKER}\n{START_MARKER}\nresult\n")
    demux.finish()

    assert demux.setup_output == f"{END_MARKER}\n"
    assert demux.agent_output == "result\n"


def test_multibyte_character_split_across_chunks() -> None:
    encoded = f"{START_MARKER}\ndone ✅\n".encode()
    split = len(encoded) - 3
    demux = OutputDemultiplexer()

    demux.feed(encoded[:split])
    demux.feed(encoded[split:])
    demux.feed("ü".encode()[:1], Stream.STDERR)
    demux.finish()

    assert demux.agent_output == "done ✅\n"
    assert demux.agent_stderr == "�"
