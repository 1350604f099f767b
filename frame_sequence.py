"""Frame sequence naming and normalization.

Both the decoder and the encoder address frames through the same printf-style
pattern, so every directory handed to ffmpeg must hold a dense run of
``00000000.png``, ``00000001.png``, ... with no gaps. Upscaling engines do not
guarantee that: they may drop frames they failed on, rename outputs
(``00000012_[NS-L3][x2.000000].png``) or write unpadded indices. The helpers
here restore the canonical sequence while keeping the original numeric order.
"""

from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Iterable

FRAME_DIGITS = 8
FRAME_EXTENSION = ".png"
FRAME_PATTERN = f"%0{FRAME_DIGITS}d{FRAME_EXTENSION}"

_NUMBER_RE = re.compile(r"\d+")
STAGING_DIRNAME = ".normalize"
_STAGING_COMPLETE = "complete"


def frame_name(index: int, extension: str = FRAME_EXTENSION) -> str:
    return f"{index:0{FRAME_DIGITS}d}{extension}"


def frame_sort_key(name: str) -> tuple[int, int, str]:
    """Order by the first integer embedded in the name, not by string collation.

    Names without any digits sort after every numbered frame.
    """
    match = _NUMBER_RE.search(name)
    if match is None:
        return (1, 0, name)
    return (0, int(match.group()), name)


def list_frames(directory: Path, extension: str = FRAME_EXTENSION) -> list[str]:
    if not directory.is_dir():
        return []
    return [
        entry.name
        for entry in directory.iterdir()
        if entry.is_file() and entry.suffix.lower() == extension
    ]


def count_frames(directory: Path, extension: str = FRAME_EXTENSION) -> int:
    """Frames in ``directory``, including any parked by an interrupted rename pass."""
    return len(list_frames(directory, extension)) + len(
        list_frames(directory / STAGING_DIRNAME, extension)
    )


def plan_renames(names: Iterable[str], extension: str = FRAME_EXTENSION) -> list[tuple[str, str]]:
    """Return ``(source, target)`` pairs that make ``names`` a dense sequence.

    Pairs whose target already matches are left out, so an already normalized
    directory yields an empty plan.
    """
    ordered = sorted(names, key=frame_sort_key)
    plan = []
    for index, name in enumerate(ordered):
        target = frame_name(index, extension)
        if name != target:
            plan.append((name, target))
    return plan


def recover_staged_frames(directory: Path, extension: str = FRAME_EXTENSION) -> None:
    """Finish or undo a staged rename pass that was cut short.

    Without the completion marker, staging was still filling up, so every
    parked frame goes back under its original name. With it, the frames in
    ``directory`` are already the dense prefix and the parked ones continue
    the sequence in numeric order.
    """
    staging = directory / STAGING_DIRNAME
    if not staging.is_dir():
        return

    parked = list_frames(staging, extension)
    if (staging / _STAGING_COMPLETE).exists():
        next_index = len(list_frames(directory, extension))
        for offset, name in enumerate(sorted(parked, key=frame_sort_key)):
            (staging / name).rename(directory / frame_name(next_index + offset, extension))
    else:
        for name in parked:
            (staging / name).rename(directory / name)
    shutil.rmtree(staging)


def normalize_frames(directory: Path, extension: str = FRAME_EXTENSION) -> int:
    """Rename frames in ``directory`` into ``%08d`` order starting at 0.

    Returns the number of frames, which may be lower than what was extracted
    if the engine skipped inputs. Safe to rerun after an interruption.
    """
    recover_staged_frames(directory, extension)
    names = list_frames(directory, extension)
    plan = plan_renames(names, extension)
    if not plan:
        return len(names)

    pending_sources = {source for source, _ in plan}
    if not any(target in pending_sources for _, target in plan):
        for source, target in plan:
            (directory / source).rename(directory / target)
        return len(names)

    # A target is still occupied by a frame that has yet to move: park every
    # frame, then bring them back in order.
    staging = directory / STAGING_DIRNAME
    staging.mkdir(exist_ok=True)
    for name in names:
        (directory / name).rename(staging / name)
    (staging / _STAGING_COMPLETE).touch()
    recover_staged_frames(directory, extension)
    return len(names)
