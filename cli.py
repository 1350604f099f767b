"""CLI: argument parsing, environment overrides, and the immutable job config."""

from __future__ import annotations

import argparse
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Sequence

from toolchain import default_worker_count

# ── Constants ──────────────────────────────────────────────────────────────────

USAGE = "Usage: magscale <input_video_file>"

SUPPORTED_ENGINES = ("waifu2x", "realesrgan")
SUPPORTED_SCALES = (1, 2, 3, 4)
NOISE_LEVELS = (0, 1, 2, 3)
SUPPORTED_CODECS = ("nvenc", "x264", "x265")
RESUME_POLICIES = ("ask", "yes", "no")
KEEP_POLICIES = ("never", "on-failure", "always")
PROGRESS_STYLES = ("auto", "bar", "log")

DEFAULT_SAMPLE_FPS = "10"
DEFAULT_PREFILTER = "hqdn3d=2:2:4:4"
DEFAULT_BLOCK_SIZE = 512
DEFAULT_QUALITY = 28
DEFAULT_REALESRGAN_MODEL = "realesr-animevideov3"


@dataclass(frozen=True)
class JobConfig:
    input_video: Path
    output_video: Path
    work_dir: Path
    sample_fps: Optional[str] = DEFAULT_SAMPLE_FPS
    prefilter: Optional[str] = DEFAULT_PREFILTER
    engine: str = "waifu2x"
    engine_path: Optional[str] = None
    model_path: Optional[str] = None
    model: str = DEFAULT_REALESRGAN_MODEL
    scale: int = 2
    noise_level: int = 3
    block_size: int = DEFAULT_BLOCK_SIZE
    workers: int = 1
    niceness: int = 10
    engine_timeout: Optional[float] = None
    codec: str = "nvenc"
    preset: Optional[str] = None
    quality: int = DEFAULT_QUALITY
    audio_bitrate: str = "192k"
    resume: str = "ask"
    keep_workspace: str = "never"
    progress: str = "auto"
    encoder_progress: bool = True
    notify: bool = True
    poll_interval: float = 1.0
    otlp_endpoint: Optional[str] = None


# ── Functions ──────────────────────────────────────────────────────────────────


def _env_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"Environment variable {name} must be an integer, got {raw!r}.") from None


def resolve_output_path(input_video: Path, output_arg: Optional[str], scale: int) -> Path:
    if output_arg:
        return Path(output_arg).expanduser().resolve()
    return (input_video.parent / f"{input_video.stem}_upscaled_{scale}x.mp4").resolve()


def default_work_dir(input_video: Path, environ: Mapping[str, str]) -> Path:
    """Per-input workspace so an interrupted run of the same file can resume."""
    base = environ.get("MAGSCALE_WORK_DIR") or tempfile.gettempdir()
    safe_stem = input_video.stem.replace(" ", "_")
    return Path(base).expanduser().resolve() / f"magscale_{safe_stem}"


def validate_config(config: JobConfig) -> None:
    if config.output_video == config.input_video:
        raise ValueError("Output video path must be different from input video path.")
    if config.quality < 0 or config.quality > 51:
        raise ValueError("Quality must be between 0 and 51.")
    if config.block_size < 0:
        raise ValueError("Block size must be >= 0.")
    if config.workers <= 0:
        raise ValueError("Worker count must be > 0.")
    if config.engine_timeout is not None and config.engine_timeout <= 0:
        raise ValueError("Engine timeout must be > 0.")
    if config.poll_interval < 0:
        raise ValueError("Poll interval must be >= 0.")
    if config.work_dir in (Path("/"), Path.home()):
        raise ValueError(f"Refusing to use {config.work_dir} as a disposable workspace.")


def build_parser(environ: Optional[Mapping[str, str]] = None) -> argparse.ArgumentParser:
    env = os.environ if environ is None else environ

    parser = argparse.ArgumentParser(
        prog="magscale",
        description="Upscale a video by running an AI image upscaler over its frames",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument("input_video", nargs="?", default=None, help="Path to input video")
    parser.add_argument(
        "-o",
        "--output",
        type=str,
        default=None,
        help="Output video path (default: <input>_upscaled_<scale>x.mp4)",
    )
    parser.add_argument(
        "--fps",
        type=str,
        default=env.get("TARGET_FPS") or DEFAULT_SAMPLE_FPS,
        help="Frame sampling rate for extraction (env TARGET_FPS)",
    )
    parser.add_argument(
        "--native-fps",
        action="store_true",
        help="Extract every source frame and keep the source frame rate",
    )
    parser.add_argument(
        "--prefilter",
        type=str,
        default=DEFAULT_PREFILTER,
        help="ffmpeg filter applied during extraction (empty string disables)",
    )
    parser.add_argument(
        "--engine",
        type=str,
        choices=SUPPORTED_ENGINES,
        default="waifu2x",
        help="Upscaling engine",
    )
    parser.add_argument(
        "--engine-path",
        type=str,
        default=None,
        help="Custom path to the upscaling engine binary",
    )
    parser.add_argument(
        "--model-path",
        type=str,
        default=None,
        help="Custom model directory path (realesrgan only)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=DEFAULT_REALESRGAN_MODEL,
        help="Model name (realesrgan only)",
    )
    parser.add_argument(
        "-s",
        "--scale",
        type=int,
        default=2,
        choices=SUPPORTED_SCALES,
        help="Upscaling factor",
    )
    parser.add_argument(
        "-n",
        "--noise-level",
        type=int,
        default=3,
        choices=NOISE_LEVELS,
        help="Denoise level (waifu2x only)",
    )
    parser.add_argument(
        "-b",
        "--block-size",
        type=int,
        default=_env_int(env, "BLOCK_SIZE", DEFAULT_BLOCK_SIZE),
        help="Engine block/tile size (env BLOCK_SIZE)",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=int,
        default=_env_int(env, "THREADS", default_worker_count()),
        help="Engine worker threads (env THREADS)",
    )
    parser.add_argument(
        "--engine-timeout",
        type=float,
        default=None,
        help="Stop the engine after this many seconds (default: wait forever)",
    )
    parser.add_argument(
        "--codec",
        type=str,
        choices=SUPPORTED_CODECS,
        default="nvenc",
        help="Output video codec. nvenc uses the NVIDIA hardware encoder.",
    )
    parser.add_argument(
        "--preset",
        type=str,
        default=None,
        help="Encoder preset (default depends on codec; env NVENC_PRESET for nvenc)",
    )
    parser.add_argument(
        "-q",
        "--quality",
        type=int,
        default=_env_int(env, "CRF_VALUE", DEFAULT_QUALITY),
        help="CRF/CQ value, lower is better (env CRF_VALUE)",
    )
    parser.add_argument(
        "--audio-bitrate",
        type=str,
        default="192k",
        help="Audio bitrate for the final AAC encode",
    )
    parser.add_argument(
        "--work-dir",
        type=str,
        default=None,
        help="Workspace directory (default: <tmp>/magscale_<input name>, env MAGSCALE_WORK_DIR)",
    )
    parser.add_argument(
        "--resume",
        type=str,
        choices=RESUME_POLICIES,
        default="ask",
        help="Reuse upscaled frames left by an earlier run",
    )
    parser.add_argument(
        "--keep-workspace",
        type=str,
        choices=KEEP_POLICIES,
        default="never",
        help="When to keep the workspace instead of deleting it",
    )
    parser.add_argument(
        "--progress",
        type=str,
        choices=PROGRESS_STYLES,
        default="auto",
        help="Progress display: redrawn bar, log lines, or pick by terminal",
    )
    parser.add_argument(
        "--no-encoder-progress",
        action="store_true",
        help="Run the final encode as a plain blocking call",
    )
    parser.add_argument("--no-notify", action="store_true", help="Disable desktop notifications")

    return parser


def parse_args(
    argv: Optional[Sequence[str]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> argparse.Namespace:
    return build_parser(environ).parse_args(argv)


def build_config(
    args: argparse.Namespace,
    environ: Optional[Mapping[str, str]] = None,
) -> JobConfig:
    """Fold parsed flags and environment overrides into one immutable config."""
    env = os.environ if environ is None else environ

    input_video = Path(args.input_video).expanduser().resolve()
    output_video = resolve_output_path(input_video, args.output, args.scale)
    if args.work_dir:
        work_dir = Path(args.work_dir).expanduser().resolve()
    else:
        work_dir = default_work_dir(input_video, env)

    preset = args.preset
    if preset is None and args.codec == "nvenc":
        preset = env.get("NVENC_PRESET") or None

    config = JobConfig(
        input_video=input_video,
        output_video=output_video,
        work_dir=work_dir,
        sample_fps=None if args.native_fps else args.fps,
        prefilter=args.prefilter or None,
        engine=args.engine,
        engine_path=args.engine_path,
        model_path=args.model_path,
        model=args.model,
        scale=args.scale,
        noise_level=args.noise_level,
        block_size=args.block_size,
        workers=args.jobs,
        engine_timeout=args.engine_timeout,
        codec=args.codec,
        preset=preset,
        quality=args.quality,
        audio_bitrate=args.audio_bitrate,
        resume=args.resume,
        keep_workspace=args.keep_workspace,
        progress=args.progress,
        encoder_progress=not args.no_encoder_progress,
        notify=not args.no_notify,
        otlp_endpoint=env.get("MAGSCALE_OTLP_ENDPOINT") or None,
    )
    validate_config(config)
    return config
