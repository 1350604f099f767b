#!/usr/bin/env python3
"""
magscale: upscale a video through an external AI image upscaler.

Frames are extracted with ffmpeg, upscaled by waifu2x-converter-cpp or
realesrgan-ncnn-vulkan running in the background, renumbered into a dense
sequence, and re-encoded together with the original audio track.
"""

from __future__ import annotations

import collections
import contextlib
import enum
import functools
import json
import shutil
import signal
import sys
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Iterator, Optional, Sequence

from opentelemetry import trace
from opentelemetry.exporter.otlp.proto.http.trace_exporter import OTLPSpanExporter
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor

from cli import USAGE, JobConfig, build_config, parse_args
from frame_sequence import FRAME_PATTERN, count_frames, normalize_frames
from progress_monitor import (
    ProgressSink,
    follow_encoder_progress,
    format_duration,
    make_progress_sink,
    monitor_background_task,
)
from toolchain import (
    Toolchain,
    launch_background,
    log_error,
    log_info,
    log_warn,
    notify,
    resolve_toolchain,
    run_subprocess,
    stream_subprocess,
)
from workspace import Workspace, build_input_identity, open_workspace

DEFAULT_FPS = 30.0
MAX_FPS = 240.0
DEFAULT_WIDTH = 1920
DEFAULT_HEIGHT = 1080

_tracing_configured = False


def init_tracing(endpoint: Optional[str]) -> None:
    """Export spans over OTLP/HTTP when an endpoint is configured.

    Without one the API's default no-op tracer stays in place.
    """
    global _tracing_configured
    if not endpoint or _tracing_configured:
        return

    resource = Resource.create({"service.name": "magscale"})
    provider = TracerProvider(resource=resource)
    provider.add_span_processor(BatchSpanProcessor(OTLPSpanExporter(endpoint=endpoint)))
    trace.set_tracer_provider(provider)
    _tracing_configured = True


def _traced(func):
    """Decorator that wraps a function call in a tracing span."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(func.__name__):
            return func(*args, **kwargs)

    return wrapper


# ── Errors ─────────────────────────────────────────────────────────────────────


class UsageError(ValueError):
    pass


class InputNotFoundError(FileNotFoundError):
    pass


class StageFailure(RuntimeError):
    """An external collaborator failed in a stage the job cannot continue without."""

    def __init__(self, stage: str, returncode: Optional[int] = None, detail: str = "") -> None:
        self.stage = stage
        self.returncode = returncode
        self.detail = detail
        message = f"Stage '{stage}' failed"
        if returncode is not None:
            message += f" with exit code {returncode}"
        if detail:
            message += f": {detail}"
        super().__init__(message)


class PartialProcessingWarning(UserWarning):
    pass


class FrameRateParseWarning(UserWarning):
    pass


# ── Data ───────────────────────────────────────────────────────────────────────


class Stage(enum.Enum):
    INIT = "init"
    EXTRACTING = "extracting"
    UPSCALING = "upscaling"
    NORMALIZING = "normalizing"
    ASSEMBLING = "assembling"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class VideoInfo:
    framerate: str
    width: int
    height: int
    has_audio: bool
    duration_seconds: float


@dataclass
class JobReport:
    output_video: Path
    stage: Stage = Stage.INIT
    resumed: bool = False
    frames_extracted: int = 0
    frames_assembled: int = 0
    playback_fps: float = DEFAULT_FPS
    warnings: list[Warning] = field(default_factory=list)

    def warn(self, warning: Warning) -> None:
        log_warn(str(warning))
        self.warnings.append(warning)


# ── Probing and frame rate ─────────────────────────────────────────────────────


def try_parse_framerate(value: Optional[str]) -> Optional[float]:
    """Parse rate expressions like ``30000/1001`` or ``30``; ``None`` if unusable."""
    if not value:
        return None

    try:
        if "/" in value:
            num, den = value.split("/", maxsplit=1)
            denominator = float(den)
            if denominator == 0:
                return None
            framerate = float(num) / denominator
        else:
            framerate = float(value)
    except (TypeError, ValueError):
        return None

    if not framerate > 0 or framerate > MAX_FPS:
        return None
    return framerate


def parse_framerate(value: Optional[str]) -> float:
    framerate = try_parse_framerate(value)
    return DEFAULT_FPS if framerate is None else framerate


def resolve_playback_rate(
    sample_fps: Optional[str],
    info: VideoInfo,
) -> tuple[float, Optional[FrameRateParseWarning]]:
    """Frames were sampled at ``sample_fps`` when set, else at the source rate."""
    expression = sample_fps if sample_fps else info.framerate
    framerate = try_parse_framerate(expression)
    if framerate is None:
        return DEFAULT_FPS, FrameRateParseWarning(
            f"Could not parse frame rate {expression!r}; using {DEFAULT_FPS:g} fps."
        )
    return framerate, None


@_traced
def probe_video(ffprobe_bin: str, input_video: Path) -> VideoInfo:
    """Read stream metadata with ffprobe."""
    cmd = [
        ffprobe_bin,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(input_video),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True)
    if result.returncode != 0:
        raise StageFailure("probe", result.returncode, _tail(result.stderr))

    try:
        payload = json.loads(result.stdout)
    except json.JSONDecodeError as exc:
        raise StageFailure("probe", detail=f"unreadable ffprobe output: {exc}") from exc

    video_stream = None
    audio_stream = None
    for stream in payload.get("streams", []):
        stream_type = stream.get("codec_type")
        if stream_type == "video" and video_stream is None:
            video_stream = stream
        elif stream_type == "audio" and audio_stream is None:
            audio_stream = stream

    if video_stream is None:
        raise StageFailure("probe", detail="no video stream found in input file")

    duration_raw = (
        video_stream.get("duration")
        or payload.get("format", {}).get("duration")
        or "0"
    )
    try:
        duration_seconds = max(float(duration_raw), 0.0)
    except (TypeError, ValueError):
        duration_seconds = 0.0

    return VideoInfo(
        framerate=video_stream.get("r_frame_rate") or video_stream.get("avg_frame_rate") or "",
        width=int(video_stream.get("width", DEFAULT_WIDTH)),
        height=int(video_stream.get("height", DEFAULT_HEIGHT)),
        has_audio=audio_stream is not None,
        duration_seconds=duration_seconds,
    )


def _tail(text: Optional[str], lines: int = 5) -> str:
    if not text:
        return ""
    return " | ".join(text.strip().splitlines()[-lines:])


# ── Extraction ─────────────────────────────────────────────────────────────────


def build_extract_frames_command(
    ffmpeg_bin: str,
    input_video: Path,
    frames_dir: Path,
    *,
    sample_fps: Optional[str],
    prefilter: Optional[str],
) -> list[str]:
    cmd = [ffmpeg_bin, "-hide_banner", "-loglevel", "error", "-i", str(input_video)]
    if prefilter:
        cmd.extend(["-vf", prefilter])
    if sample_fps:
        cmd.extend(["-r", sample_fps])
    cmd.extend(["-start_number", "0", "-y", str(frames_dir / FRAME_PATTERN)])
    return cmd


@_traced
def extract_frames(
    ffmpeg_bin: str,
    input_video: Path,
    frames_dir: Path,
    *,
    sample_fps: Optional[str],
    prefilter: Optional[str],
) -> int:
    """Decode the input into a dense PNG sequence; returns the frame count."""
    cmd = build_extract_frames_command(
        ffmpeg_bin,
        input_video,
        frames_dir,
        sample_fps=sample_fps,
        prefilter=prefilter,
    )
    result = run_subprocess(cmd, check=False, capture_output=True)
    if result.returncode != 0:
        raise StageFailure("extract", result.returncode, _tail(result.stderr))

    frame_count = count_frames(frames_dir)
    if frame_count == 0:
        raise StageFailure("extract", detail="frame extraction produced zero frames")
    return frame_count


@_traced
def extract_audio(
    ffmpeg_bin: str,
    input_video: Path,
    audio_path: Path,
    *,
    has_audio: bool,
) -> Optional[Path]:
    """Copy the first audio stream verbatim. Inputs without audio yield ``None``."""
    if not has_audio:
        log_info("No audio stream found; output will be video-only.")
        return None

    cmd = [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel",
        "error",
        "-i",
        str(input_video),
        "-vn",
        "-map",
        "0:a:0",
        "-c:a",
        "copy",
        "-y",
        str(audio_path),
    ]
    result = run_subprocess(cmd, check=False, capture_output=True)
    if result.returncode != 0:
        raise StageFailure("audio", result.returncode, _tail(result.stderr))
    return audio_path


def check_disk_space(
    workspace_root: Path,
    info: VideoInfo,
    scale: int,
    frame_count: int,
) -> None:
    """Warn or fail if projected disk usage exceeds available space."""
    # PNG frames: ~1.5 bytes per pixel in, ~3 bytes per pixel out after upscaling
    input_bytes_per_frame = info.width * info.height * 1.5
    output_bytes_per_frame = (info.width * scale) * (info.height * scale) * 3.0
    projected_bytes = (input_bytes_per_frame + output_bytes_per_frame) * frame_count

    available = shutil.disk_usage(workspace_root).free
    projected_gb = projected_bytes / (1024**3)
    available_gb = available / (1024**3)
    if projected_bytes > available * 0.9:
        raise RuntimeError(
            f"Projected disk usage ({projected_gb:.1f} GB) exceeds 90% of "
            f"available space ({available_gb:.1f} GB). Use --work-dir to "
            f"point to a larger volume, or lower --fps or --scale."
        )
    if projected_bytes > available * 0.5:
        log_warn(
            f"Projected disk usage ({projected_gb:.1f} GB) is over "
            f"50% of available space ({available_gb:.1f} GB)."
        )


# ── Upscaling ──────────────────────────────────────────────────────────────────


def build_engine_command(
    toolchain: Toolchain,
    config: JobConfig,
    input_dir: Path,
    output_dir: Path,
) -> list[str]:
    if config.engine == "waifu2x":
        cmd = [
            str(toolchain.engine_binary),
            "--processor",
            "0",
            "--jobs",
            str(config.workers),
            "--mode",
            "noise-scale" if config.noise_level > 0 else "scale",
            "--noise-level",
            str(config.noise_level),
            "--scale-ratio",
            str(config.scale),
            "--block-size",
            str(config.block_size),
            "-i",
            str(input_dir),
            "-o",
            str(output_dir),
        ]
    elif config.engine == "realesrgan":
        cmd = [
            str(toolchain.engine_binary),
            "-i",
            str(input_dir),
            "-o",
            str(output_dir),
            "-n",
            config.model,
            "-s",
            str(config.scale),
            "-f",
            "png",
            "-t",
            str(config.block_size),
            "-j",
            f"1:{config.workers}:1",
        ]
        if toolchain.model_path is not None:
            cmd.extend(["-m", str(toolchain.model_path)])
    else:
        raise ValueError(f"Unsupported upscaling engine: {config.engine}")

    if toolchain.nice and config.niceness:
        cmd = [toolchain.nice, "-n", str(config.niceness)] + cmd
    return cmd


@_traced
def run_upscale(
    toolchain: Toolchain,
    config: JobConfig,
    workspace: Workspace,
    total_expected: int,
    sink: ProgressSink,
    report: JobReport,
) -> int:
    """Run the engine in the background until it exits; returns frames produced.

    A non-zero exit or a short output is tolerated as long as some frames were
    written. No frames at all fails the job.
    """
    cmd = build_engine_command(toolchain, config, workspace.in_dir, workspace.out_dir)
    try:
        task = launch_background(cmd)
    except OSError as exc:
        raise StageFailure("upscale", detail=f"could not start engine: {exc}") from exc

    try:
        returncode = monitor_background_task(
            task,
            workspace.out_dir,
            total_expected,
            sink,
            poll_interval=config.poll_interval,
            timeout=config.engine_timeout,
        )
    except BaseException:
        task.terminate()
        raise

    produced = count_frames(workspace.out_dir)
    if produced == 0:
        raise StageFailure("upscale", returncode, "engine produced no frames")

    if returncode != 0:
        report.warn(
            PartialProcessingWarning(
                f"Upscaling engine exited with status {returncode}; "
                f"continuing with {produced}/{total_expected} frames."
            )
        )
    elif produced < total_expected:
        report.warn(
            PartialProcessingWarning(
                f"Upscaling engine produced {produced}/{total_expected} frames; "
                "output will be shorter."
            )
        )
    return produced


# ── Assembly ───────────────────────────────────────────────────────────────────


def get_codec_flags(codec: str, preset: Optional[str], quality: int) -> list[str]:
    """Return ffmpeg codec flags for the requested encoder."""
    if codec == "nvenc":
        return ["-c:v", "h264_nvenc", "-rc", "vbr", "-cq", str(quality), "-preset", preset or "p6"]
    if codec == "x264":
        return ["-c:v", "libx264", "-preset", preset or "slow", "-crf", str(quality)]
    if codec == "x265":
        return ["-c:v", "libx265", "-preset", preset or "medium", "-crf", str(quality)]
    raise ValueError(f"Unsupported codec: {codec}")


def build_assemble_command(
    ffmpeg_bin: str,
    frames_dir: Path,
    output_video: Path,
    *,
    framerate: float,
    audio_path: Optional[Path],
    codec: str,
    preset: Optional[str],
    quality: int,
    audio_bitrate: str,
    progress: bool,
) -> list[str]:
    cmd = [
        ffmpeg_bin,
        "-hide_banner",
        "-loglevel",
        "error",
        "-framerate",
        str(framerate),
        "-start_number",
        "0",
        "-i",
        str(frames_dir / FRAME_PATTERN),
    ]

    with_audio = audio_path is not None and audio_path.exists()
    if with_audio:
        cmd.extend(["-i", str(audio_path)])

    cmd.extend(["-map", "0:v:0"])
    if with_audio:
        cmd.extend(["-map", "1:a:0?"])

    cmd.extend(get_codec_flags(codec, preset, quality))
    cmd.extend(["-pix_fmt", "yuv420p"])

    if with_audio:
        cmd.extend(["-c:a", "aac", "-b:a", audio_bitrate, "-shortest"])

    if progress:
        cmd.extend(["-progress", "pipe:1", "-nostats"])

    cmd.extend(["-y", str(output_video)])
    return cmd


def _collect_errors(lines: Iterable[str], errors: collections.deque) -> Iterator[str]:
    for line in lines:
        if "=" not in line:
            errors.append(line.strip())
        yield line


@_traced
def assemble_video(
    ffmpeg_bin: str,
    frames_dir: Path,
    output_video: Path,
    *,
    total_frames: int,
    framerate: float,
    audio_path: Optional[Path],
    config: JobConfig,
    sink: Optional[ProgressSink],
) -> None:
    """Encode the normalized frames, muxing audio when there is any.

    With a sink, ffmpeg's ``-progress`` records drive the bar; without one the
    encode is a plain blocking call.
    """
    cmd = build_assemble_command(
        ffmpeg_bin,
        frames_dir,
        output_video,
        framerate=framerate,
        audio_path=audio_path,
        codec=config.codec,
        preset=config.preset,
        quality=config.quality,
        audio_bitrate=config.audio_bitrate,
        progress=sink is not None,
    )

    if sink is None:
        result = run_subprocess(cmd, check=False, capture_output=True)
        if result.returncode != 0:
            raise StageFailure("assemble", result.returncode, _tail(result.stderr))
        return

    errors: collections.deque = collections.deque(maxlen=5)
    process = stream_subprocess(cmd)
    try:
        follow_encoder_progress(_collect_errors(process.stdout, errors), total_frames, sink)
    except BaseException:
        process.kill()
        process.wait()
        raise
    returncode = process.wait()
    if returncode != 0:
        raise StageFailure("assemble", returncode, " | ".join(errors))


# ── Pipeline ───────────────────────────────────────────────────────────────────


@_traced
def run_pipeline(config: JobConfig, *, prompt=None) -> JobReport:
    report = JobReport(output_video=config.output_video)

    input_video = config.input_video
    if not input_video.is_file():
        raise InputNotFoundError(f"File not found: {input_video}")

    toolchain = resolve_toolchain(
        config.engine,
        engine_path=config.engine_path,
        model_path=config.model_path,
        use_notifier=config.notify,
    )
    config.output_video.parent.mkdir(parents=True, exist_ok=True)

    log_info(f"Input:  {input_video}")
    log_info(f"Output: {config.output_video}")
    log_info(f"Temp:   {config.work_dir}")

    total_start = time.monotonic()
    try:
        session, resumed = open_workspace(
            config.work_dir,
            config.resume,
            config.keep_workspace,
            identity=build_input_identity(input_video),
            prompt=prompt,
        )
        report.resumed = resumed
        with session as workspace:
            _run_stages(toolchain, config, workspace, report)
    except Exception as exc:
        report.stage = Stage.FAILED
        notify(toolchain.notifier, "Upscale Failed", str(exc), urgency="critical")
        raise

    report.stage = Stage.DONE
    log_info(f"Done in {format_duration(time.monotonic() - total_start)}! Saved to: {config.output_video}")
    notify(toolchain.notifier, "Upscale Complete", f"Video is ready: {input_video.stem}")
    return report


def _run_stages(
    toolchain: Toolchain,
    config: JobConfig,
    workspace: Workspace,
    report: JobReport,
) -> None:
    span = trace.get_current_span()
    info = probe_video(toolchain.ffprobe, config.input_video)

    if report.resumed:
        log_info("Resuming: skipping extraction and AI upscaling.")
        total_expected = count_frames(workspace.in_dir)
        audio_path = workspace.audio_path if workspace.audio_path.exists() else None
    else:
        report.stage = Stage.EXTRACTING
        rate_label = f"{config.sample_fps} FPS" if config.sample_fps else "native FPS"
        log_info(f"Step 1/3: Extracting raw frames ({rate_label})...")
        total_expected = extract_frames(
            toolchain.ffmpeg,
            config.input_video,
            workspace.in_dir,
            sample_fps=config.sample_fps,
            prefilter=config.prefilter,
        )
        audio_path = extract_audio(
            toolchain.ffmpeg,
            config.input_video,
            workspace.audio_path,
            has_audio=info.has_audio,
        )
        log_info(f"Extracted {total_expected} frames.")
        check_disk_space(workspace.root, info, config.scale, total_expected)

        report.stage = Stage.UPSCALING
        log_info(f"Step 2/3: AI upscaling ({config.engine}, {config.scale}x)...")
        run_upscale(
            toolchain,
            config,
            workspace,
            total_expected,
            make_progress_sink(config.progress, "files"),
            report,
        )
    report.frames_extracted = total_expected

    report.stage = Stage.NORMALIZING
    log_info("Normalizing frame sequence for assembly...")
    frame_total = normalize_frames(workspace.out_dir)
    if frame_total == 0:
        raise StageFailure("normalize", detail=f"no upscaled frames in {workspace.out_dir}")
    report.frames_assembled = frame_total
    span.set_attribute("magscale.frames", frame_total)

    report.stage = Stage.ASSEMBLING
    framerate, rate_warning = resolve_playback_rate(config.sample_fps, info)
    if rate_warning is not None:
        report.warn(rate_warning)
    report.playback_fps = framerate
    log_info(f"Step 3/3: Assembling {frame_total} frames at {framerate:.3f} fps ({config.codec})...")
    assemble_video(
        toolchain.ffmpeg,
        workspace.out_dir,
        config.output_video,
        total_frames=frame_total,
        framerate=framerate,
        audio_path=audio_path,
        config=config,
        sink=make_progress_sink(config.progress, "frames") if config.encoder_progress else None,
    )


@contextlib.contextmanager
def _interrupt_on_sigterm() -> Iterator[None]:
    """Route SIGTERM through the same unwinding path as Ctrl+C."""

    def _handler(signum, _frame):
        raise KeyboardInterrupt(f"received signal {signum}")

    previous = signal.signal(signal.SIGTERM, _handler)
    try:
        yield
    finally:
        signal.signal(signal.SIGTERM, previous)


def main(argv: Optional[Sequence[str]] = None) -> int:
    raw_argv = list(argv) if argv is not None else sys.argv[1:]
    try:
        args = parse_args(raw_argv)
        if not args.input_video:
            raise UsageError(USAGE)
        config = build_config(args)
        init_tracing(config.otlp_endpoint)
        with _interrupt_on_sigterm():
            run_pipeline(config)
    except KeyboardInterrupt:
        log_error("Interrupted by user.")
        return 130
    except Exception as exc:
        log_error(str(exc))
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
