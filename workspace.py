"""Workspace lifecycle: layout, resume detection, and guaranteed teardown."""

from __future__ import annotations

import contextlib
import enum
import json
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator, Optional

from frame_sequence import count_frames
from progress_monitor import close_progress_bars
from toolchain import log_info, log_warn

AUDIO_FILENAME = "audio.mka"
MANIFEST_FILENAME = "workspace_manifest.json"
RESUME_PROMPT = "Skip AI upscaling and resume with video assembly? (y/n) "


class JobState(enum.Enum):
    FRESH = "fresh"
    RESUMABLE = "resumable"


@dataclass(frozen=True)
class Workspace:
    root: Path

    @property
    def in_dir(self) -> Path:
        return self.root / "in"

    @property
    def out_dir(self) -> Path:
        return self.root / "out"

    @property
    def audio_path(self) -> Path:
        return self.root / AUDIO_FILENAME

    @property
    def manifest_path(self) -> Path:
        return self.root / MANIFEST_FILENAME


def build_input_identity(input_video: Path) -> dict[str, object]:
    """Build stable identity data for the input a workspace was made from."""
    stat_info = input_video.stat()
    return {
        "path": str(input_video),
        "size": stat_info.st_size,
        "mtime_ns": stat_info.st_mtime_ns,
    }


def read_workspace_manifest(manifest_path: Path) -> dict[str, object]:
    if not manifest_path.exists():
        return {}
    try:
        payload = json.loads(manifest_path.read_text())
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


def write_workspace_manifest(manifest_path: Path, identity: dict[str, object]) -> None:
    payload = {
        "input": identity,
        "written_at": int(time.time()),
    }
    manifest_path.write_text(json.dumps(payload, indent=2, sort_keys=True))


def detect_job_state(root: Path, identity: Optional[dict[str, object]] = None) -> JobState:
    """A workspace is resumable once its ``out`` directory holds any frame.

    When ``identity`` is given, frames left behind by a different input (same
    file name, other content) do not count.
    """
    workspace = Workspace(root)
    if count_frames(workspace.out_dir) == 0:
        return JobState.FRESH
    if identity is not None:
        recorded = read_workspace_manifest(workspace.manifest_path).get("input")
        if recorded and recorded != identity:
            log_warn(f"Workspace {root} belongs to a different input; starting over.")
            return JobState.FRESH
    return JobState.RESUMABLE


def _ask_yes_no(question: str) -> bool:
    if not sys.stdin.isatty():
        return False
    try:
        reply = input(question)
    except EOFError:
        return False
    return reply.strip().lower().startswith("y")


def decide_resume(
    state: JobState,
    policy: str,
    prompt: Callable[[str], bool] = _ask_yes_no,
) -> bool:
    if state is not JobState.RESUMABLE:
        return False
    if policy == "yes":
        return True
    if policy == "no":
        return False
    if policy == "ask":
        return prompt(RESUME_PROMPT)
    raise ValueError(f"Unsupported resume policy: {policy}")


def prepare_workspace(
    root: Path,
    resume: bool,
    identity: Optional[dict[str, object]] = None,
) -> Workspace:
    """Reuse the tree at ``root`` when resuming, otherwise start it over."""
    workspace = Workspace(root)
    if resume:
        workspace.in_dir.mkdir(parents=True, exist_ok=True)
        workspace.out_dir.mkdir(parents=True, exist_ok=True)
        return workspace

    if root.exists():
        shutil.rmtree(root)
    workspace.in_dir.mkdir(parents=True)
    workspace.out_dir.mkdir(parents=True)
    if identity is not None:
        write_workspace_manifest(workspace.manifest_path, identity)
    return workspace


def teardown_workspace(workspace: Workspace, keep: bool = False) -> None:
    if keep:
        log_warn(f"Workspace kept at: {workspace.root}")
        return
    if workspace.root.exists():
        shutil.rmtree(workspace.root, ignore_errors=True)


def should_keep(policy: str, failed: bool) -> bool:
    if policy == "always":
        return True
    if policy == "on-failure":
        return failed
    return False


@contextlib.contextmanager
def workspace_session(
    root: Path,
    *,
    resume: bool,
    keep_policy: str = "never",
    identity: Optional[dict[str, object]] = None,
) -> Iterator[Workspace]:
    """Yield a prepared workspace and tear it down exactly once on every exit.

    ``KeyboardInterrupt`` counts as a failure for the keep policy. Any progress
    bar still on screen is finished first so the terminal ends on a clean line.
    """
    workspace = prepare_workspace(root, resume, identity)
    failed = True
    try:
        yield workspace
        failed = False
    finally:
        close_progress_bars()
        if not failed:
            log_info("Cleaning up temporary files...")
        teardown_workspace(workspace, keep=should_keep(keep_policy, failed))


def open_workspace(
    root: Path,
    resume_policy: str,
    keep_policy: str,
    *,
    identity: Optional[dict[str, object]] = None,
    prompt: Optional[Callable[[str], bool]] = None,
) -> tuple[contextlib.AbstractContextManager, bool]:
    """Decide resume from the workspace contents and return the session."""
    state = detect_job_state(root, identity)
    if state is JobState.RESUMABLE:
        log_warn(f"Previous frames detected in {root}")
    resume = decide_resume(state, resume_policy, prompt or _ask_yes_no)
    session = workspace_session(
        root,
        resume=resume,
        keep_policy=keep_policy,
        identity=identity,
    )
    return session, resume
