import asyncio
import io

import pytest
from rich.console import Console

from vesper.progress import CLEAR_LINE, SPINNER_FRAMES, ProgressBroadcaster
from vesper.types import Phase, PhaseEvent


def _terminal_broadcaster(**kwargs) -> tuple[ProgressBroadcaster, io.StringIO]:
    buffer = io.StringIO()
    console = Console(file=buffer, force_terminal=True, width=120)
    return ProgressBroadcaster(console, **kwargs), buffer


def test_pause_then_resume_only_clears_the_line() -> None:
    broadcaster, buffer = _terminal_broadcaster()
    event = PhaseEvent.of(Phase.THINKING)
    broadcaster.update_phase(event)

    broadcaster.pause()
    assert broadcaster.is_paused
    assert buffer.getvalue() == CLEAR_LINE

    broadcaster.resume()
    assert not broadcaster.is_paused
    assert broadcaster.current is event
    assert buffer.getvalue() == CLEAR_LINE


def test_paused_context_resumes_on_error() -> None:
    broadcaster, _ = _terminal_broadcaster()

    with pytest.raises(RuntimeError), broadcaster.paused():
        assert broadcaster.is_paused
        raise RuntimeError("prompt failed")

    assert not broadcaster.is_paused


def test_listeners_receive_events_in_order() -> None:
    broadcaster, _ = _terminal_broadcaster()
    seen: list[Phase] = []
    other: list[Phase] = []
    broadcaster.subscribe(lambda event: seen.append(event.phase))
    unsubscribe = broadcaster.subscribe(lambda event: other.append(event.phase))

    broadcaster.update_phase(PhaseEvent.of(Phase.PREPARING))
    unsubscribe()
    broadcaster.update_phase(PhaseEvent.of(Phase.EMBEDDING))

    assert seen == [Phase.PREPARING, Phase.EMBEDDING]
    assert other == [Phase.PREPARING]


def test_failing_listener_does_not_block_others() -> None:
    broadcaster, _ = _terminal_broadcaster()
    seen: list[str] = []

    def _broken(_event: PhaseEvent) -> None:
        raise ValueError("boom")

    broadcaster.subscribe(_broken)
    broadcaster.subscribe(lambda event: seen.append(event.label))
    broadcaster.update_phase(PhaseEvent.of(Phase.TOOL_EXECUTION, "bash"))

    assert seen == ["Using bash"]


def test_render_line_shows_frame_indicator_label_and_elapsed() -> None:
    now = [103.5]
    broadcaster, _ = _terminal_broadcaster(clock=lambda: now[0])
    broadcaster.update_phase(PhaseEvent(Phase.PREPARING, "Preparing", started_at=100.0))
    broadcaster.update_phase(PhaseEvent(Phase.THINKING, "Thinking", started_at=102.0))

    line = broadcaster.render_line()

    assert line is not None
    assert SPINNER_FRAMES[0] in line
    assert Phase.THINKING.indicator in line
    assert line.endswith("Thinking (3s)...")


def test_render_line_is_empty_after_finish() -> None:
    broadcaster, _ = _terminal_broadcaster()
    broadcaster.update_phase(PhaseEvent.of(Phase.FINALIZING))

    broadcaster.finish()

    assert broadcaster.current is None
    assert broadcaster.render_line() is None


@pytest.mark.asyncio
async def test_render_loop_draws_and_stays_quiet_while_paused() -> None:
    broadcaster, buffer = _terminal_broadcaster(poll_interval=0.01, refresh_interval=0.0)
    broadcaster.update_phase(PhaseEvent.of(Phase.THINKING))
    broadcaster.start()
    await asyncio.sleep(0.05)
    assert "Thinking" in buffer.getvalue()

    broadcaster.pause()
    mark = len(buffer.getvalue())
    await asyncio.sleep(0.05)
    assert buffer.getvalue()[mark:] == ""

    broadcaster.resume()
    await asyncio.sleep(0.05)
    assert "Thinking" in buffer.getvalue()[mark:]

    await broadcaster.stop()
    assert not broadcaster.running
    assert buffer.getvalue().endswith(CLEAR_LINE)


@pytest.mark.asyncio
async def test_render_loop_does_not_draw_without_terminal() -> None:
    buffer = io.StringIO()
    broadcaster = ProgressBroadcaster(Console(file=buffer, force_terminal=False), poll_interval=0.01)
    seen: list[Phase] = []
    broadcaster.subscribe(lambda event: seen.append(event.phase))
    broadcaster.start()

    broadcaster.update_phase(PhaseEvent.of(Phase.THINKING))
    await asyncio.sleep(0.03)
    broadcaster.pause()
    broadcaster.resume()
    await broadcaster.stop()

    assert buffer.getvalue() == ""
    assert seen == [Phase.THINKING]
