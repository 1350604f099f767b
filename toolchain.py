"""Toolchain: binary resolution, subprocess wrappers, notifications, console output."""

from __future__ import annotations

import os
import platform
import shutil
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence, TextIO

from tqdm import tqdm

ENGINE_BINARIES = {
    "waifu2x": "waifu2x-converter-cpp",
    "realesrgan": "realesrgan-ncnn-vulkan",
}

_BLUE = "\033[34m"
_YELLOW = "\033[33m"
_RED = "\033[31m"
_RESET = "\033[0m"


@dataclass(frozen=True)
class Toolchain:
    ffmpeg: str
    ffprobe: str
    engine_binary: Path
    model_path: Optional[Path]
    nice: Optional[str]
    notifier: Optional[str]


def progress_write(message: str, *, file: Optional[TextIO] = None) -> None:
    """Write a status line without tearing an active progress bar."""
    tqdm.write(message, file=file)


def log_info(message: str) -> None:
    progress_write(f"{_BLUE}[INFO]{_RESET} {message}")


def log_warn(message: str) -> None:
    progress_write(f"{_YELLOW}[WARN]{_RESET} {message}")


def log_error(message: str) -> None:
    progress_write(f"{_RED}[ERROR]{_RESET} {message}", file=sys.stderr)


def run_subprocess(
    cmd: Sequence[str],
    *,
    check: bool = True,
    capture_output: bool = False,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess[str]:
    return subprocess.run(
        [str(part) for part in cmd],
        check=check,
        capture_output=capture_output,
        text=True,
        timeout=timeout,
    )


def stream_subprocess(cmd: Sequence[str]) -> subprocess.Popen:
    """Start ``cmd`` with stdout and stderr merged into one line-buffered text pipe."""
    return subprocess.Popen(
        [str(part) for part in cmd],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        bufsize=1,
    )


class BackgroundTask:
    """Handle on a detached external process.

    Only liveness, a blocking wait and termination are exposed; the process
    output is discarded because the only progress signal is files on disk.
    """

    def __init__(self, process: subprocess.Popen) -> None:
        self._process = process

    @property
    def pid(self) -> int:
        return self._process.pid

    def is_alive(self) -> bool:
        return self._process.poll() is None

    def wait(self) -> int:
        return self._process.wait()

    def terminate(self, grace_seconds: float = 5.0) -> None:
        if not self.is_alive():
            return
        self._process.terminate()
        try:
            self._process.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            self._process.kill()
            self._process.wait()


def launch_background(cmd: Sequence[str]) -> BackgroundTask:
    process = subprocess.Popen(
        [str(part) for part in cmd],
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
    )
    return BackgroundTask(process)


def notify(notifier: Optional[str], title: str, message: str, *, urgency: str = "normal") -> bool:
    """Fire-and-forget desktop notification. Never raises."""
    if not notifier:
        return False
    try:
        result = run_subprocess(
            [notifier, "-u", urgency, title, message],
            check=False,
            capture_output=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def get_engine_binary_name(engine: str) -> str:
    """Return the expected engine binary name for the current OS."""
    try:
        name = ENGINE_BINARIES[engine]
    except KeyError:
        raise ValueError(f"Unsupported upscaling engine: {engine}") from None
    if platform.system().lower() == "windows":
        return f"{name}.exe"
    return name


def resolve_engine_binary(engine: str, custom_path: Optional[str]) -> Path:
    """Resolve the upscaling engine from an explicit path or PATH."""
    if custom_path:
        candidate = Path(custom_path).expanduser().resolve()
        if not candidate.is_file():
            raise FileNotFoundError(f"Upscaling engine not found at: {candidate}")
        return candidate

    binary_name = get_engine_binary_name(engine)
    system_binary = shutil.which(binary_name)
    if system_binary:
        return Path(system_binary).resolve()

    raise FileNotFoundError(
        f"Unable to locate {binary_name}. Install it in PATH or pass "
        "--engine-path explicitly."
    )


def resolve_model_path(
    custom_model_path: Optional[str],
    engine_binary: Path,
) -> Optional[Path]:
    """Resolve model directory from explicit value or a folder next to the binary.

    Package managers that install into a prefix (Nix, Homebrew) put the models
    under ``<prefix>/share/<binary>/models``; portable builds ship ``models/``
    beside the executable.
    """
    if custom_model_path:
        model_dir = Path(custom_model_path).expanduser().resolve()
        if not model_dir.is_dir():
            raise FileNotFoundError(f"Model directory not found: {model_dir}")
        return model_dir

    candidates = [
        engine_binary.parent / "models",
        engine_binary.parent.parent / "share" / engine_binary.stem / "models",
    ]
    for candidate in candidates:
        if candidate.is_dir():
            return candidate.resolve()
    return None


def resolve_toolchain(
    engine: str,
    *,
    engine_path: Optional[str] = None,
    model_path: Optional[str] = None,
    use_notifier: bool = True,
) -> Toolchain:
    """Resolve runtime binaries and raise clear dependency errors."""
    ffmpeg_bin = shutil.which("ffmpeg")
    ffprobe_bin = shutil.which("ffprobe")
    if not ffmpeg_bin or not ffprobe_bin:
        missing = []
        if not ffmpeg_bin:
            missing.append("ffmpeg")
        if not ffprobe_bin:
            missing.append("ffprobe")
        raise FileNotFoundError(
            f"Missing required dependency: {', '.join(missing)}. "
            "Install it with your system package manager."
        )

    engine_binary = resolve_engine_binary(engine, engine_path)
    models = None
    if engine == "realesrgan":
        models = resolve_model_path(model_path, engine_binary)

    return Toolchain(
        ffmpeg=ffmpeg_bin,
        ffprobe=ffprobe_bin,
        engine_binary=engine_binary,
        model_path=models,
        nice=shutil.which("nice"),
        notifier=shutil.which("notify-send") if use_notifier else None,
    )


def default_worker_count() -> int:
    return os.cpu_count() or 1
