"""Progress reporting for long-running external stages.

The upscaling engine reports nothing while it runs; the only signal is the
number of images it has written so far. ``monitor_background_task`` polls that
count once per interval and turns it into a percent and an ETA. The final
encode is different: ffmpeg can emit ``key=value`` progress records, and
``follow_encoder_progress`` re-renders the same bar from its ``frame=`` lines.

Rendering goes through a small sink interface so the arithmetic stays free of
terminal I/O.
"""

from __future__ import annotations

import sys
import time
import weakref
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional, Protocol, TextIO

from tqdm import tqdm

from frame_sequence import count_frames
from toolchain import BackgroundTask, progress_write

BAR_WIDTH = 50
BAR_FORMAT = "[{bar:%d}] {desc}" % BAR_WIDTH
BAR_CHARSET = " #"
ETA_MIN_FRAMES = 5
UNKNOWN_ETA = "--:--"

_open_bars: "weakref.WeakSet[tqdm]" = weakref.WeakSet()


def compute_percent(current: int, total: int) -> int:
    if total <= 0:
        return 0
    percent = (100 * current) // total
    return max(0, min(100, percent))


def estimate_eta(elapsed: float, current: int, total: int) -> Optional[float]:
    """Linear extrapolation from the average time per finished frame.

    Returns ``None`` while too few frames are done for the average to mean
    anything, and again once the run is complete.
    """
    if current <= ETA_MIN_FRAMES:
        return None
    if compute_percent(current, total) >= 100:
        return None
    return max(0.0, elapsed * (total - current) / current)


@dataclass(frozen=True)
class ProgressSample:
    elapsed_seconds: float
    frames_done: int
    frames_total: int

    @property
    def percent(self) -> int:
        return compute_percent(self.frames_done, self.frames_total)

    @property
    def eta_seconds(self) -> Optional[float]:
        return estimate_eta(self.elapsed_seconds, self.frames_done, self.frames_total)


def format_duration(seconds: Optional[float]) -> str:
    if seconds is None:
        return UNKNOWN_ETA
    return tqdm.format_interval(seconds)


def format_status(sample: ProgressSample, style: str = "files") -> str:
    """Text shown after the bar: percent, counts and, for files, timing."""
    if style == "frames":
        return f"{sample.percent:3d}% | Frame: {sample.frames_done}/{sample.frames_total}"
    return (
        f"{sample.percent:3d}% | {sample.frames_done}/{sample.frames_total} | "
        f"{format_duration(sample.elapsed_seconds)} < {format_duration(sample.eta_seconds)}"
    )


class ProgressSink(Protocol):
    def render(self, sample: ProgressSample) -> None: ...

    def close(self) -> None: ...


class TerminalProgressSink:
    """Fixed-width tqdm bar redrawn in place.

    tqdm only draws the bar; percent, counts and ETA come from
    ``format_status`` so they follow the same rules as the log sink.
    """

    def __init__(self, style: str = "files", stream: Optional[TextIO] = None) -> None:
        self.style = style
        self._stream = stream
        self._bar: Optional[tqdm] = None

    def _open(self, total: int) -> tqdm:
        bar = tqdm(
            total=total,
            file=self._stream if self._stream is not None else sys.stdout,
            bar_format=BAR_FORMAT,
            ascii=BAR_CHARSET,
            colour="magenta" if self.style == "frames" else "cyan",
            disable=False,
            leave=True,
        )
        _open_bars.add(bar)
        return bar

    def render(self, sample: ProgressSample) -> None:
        if self._bar is None:
            self._bar = self._open(sample.frames_total)
        bar = self._bar
        bar.total = sample.frames_total
        bar.n = max(0, min(sample.frames_done, sample.frames_total))
        bar.set_description_str(format_status(sample, self.style), refresh=False)
        bar.refresh()

    def close(self) -> None:
        if self._bar is None:
            return
        self._bar.close()
        _open_bars.discard(self._bar)
        self._bar = None


class LogProgressSink:
    """Appends a plain line each time progress crosses another ``step`` percent."""

    def __init__(self, style: str = "files", step: int = 10) -> None:
        self.style = style
        self.step = step
        self._last_bucket: Optional[int] = None

    def render(self, sample: ProgressSample) -> None:
        bucket = sample.percent // self.step
        if bucket == self._last_bucket:
            return
        self._last_bucket = bucket
        label = "Encoding" if self.style == "frames" else "Upscaling"
        progress_write(f"{label}: {format_status(sample, self.style)}")

    def close(self) -> None:
        self._last_bucket = None


def make_progress_sink(style: str, kind: str = "files") -> ProgressSink:
    if style == "bar":
        return TerminalProgressSink(kind)
    if style == "log":
        return LogProgressSink(kind)
    if style == "auto":
        if sys.stdout.isatty():
            return TerminalProgressSink(kind)
        return LogProgressSink(kind)
    raise ValueError(f"Unsupported progress style: {style}")


def close_progress_bars() -> None:
    """Finish any bar still on screen so the terminal is left on a fresh line."""
    for bar in list(_open_bars):
        bar.close()
        _open_bars.discard(bar)


def monitor_background_task(
    task: BackgroundTask,
    output_dir: Path,
    total_expected: int,
    sink: ProgressSink,
    *,
    poll_interval: float = 1.0,
    timeout: Optional[float] = None,
    clock: Callable[[], float] = time.monotonic,
    sleep: Callable[[float], None] = time.sleep,
) -> int:
    """Block until ``task`` exits, rendering one progress sample per tick.

    The file count can plateau before the engine flushes its last image, so the
    loop always ends with a blocking ``wait()`` and returns that exit status.
    With ``timeout`` set the task is terminated once it runs that long.
    """
    start_time = clock()
    try:
        while task.is_alive():
            elapsed = clock() - start_time
            current = count_frames(output_dir)
            sink.render(ProgressSample(elapsed, current, total_expected))
            if timeout is not None and elapsed >= timeout:
                progress_write(f"Engine exceeded {format_duration(timeout)}; stopping it.")
                task.terminate()
                break
            sleep(poll_interval)
        returncode = task.wait()
        sink.render(ProgressSample(clock() - start_time, count_frames(output_dir), total_expected))
    finally:
        sink.close()
    return returncode


def parse_progress_line(line: str) -> Optional[int]:
    """Return the frame number from a ``frame=<n>`` record, else ``None``."""
    key, sep, value = line.strip().partition("=")
    if not sep or key.strip() != "frame":
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def follow_encoder_progress(
    lines: Iterable[str],
    total_frames: int,
    sink: ProgressSink,
    *,
    clock: Callable[[], float] = time.monotonic,
) -> Optional[int]:
    """Render encoder ``frame=`` records as they arrive; return the last frame."""
    start_time = clock()
    last_frame: Optional[int] = None
    try:
        for line in lines:
            frame = parse_progress_line(line)
            if frame is None:
                continue
            last_frame = frame
            sink.render(ProgressSample(clock() - start_time, frame, total_frames))
    finally:
        sink.close()
    return last_frame
