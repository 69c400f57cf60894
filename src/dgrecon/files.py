"""File naming helpers for engine inputs and outputs.

The engine never overwrites: if ``<stem>.<ext>`` exists it writes
``<stem>.<ext>_2``, then ``_3`` and so on.  These helpers predict the
name it is about to use so the caller can rename it afterwards.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Union

from dgrecon.errors import MissingOutputError

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


def basename_of(path: PathLike) -> str:
    """File name without directory and without the part after the last dot."""
    name = Path(path).name
    if "." in name:
        return name[: name.rindex(".")]
    return name


def model_suffix(model: int) -> str:
    """Engine-native model extension, e.g. ``001`` for model 1."""
    return f"{model:03d}"


def tinker_output_path(path: PathLike, ext: str) -> Path:
    """Predict the file the engine will write for input *path* and *ext*."""
    path = Path(path)
    stem = basename_of(path)
    candidate = path.parent / f"{stem}.{ext}"
    if not candidate.exists():
        return candidate
    i = 2
    while True:
        candidate = path.parent / f"{stem}.{ext}_{i}"
        if not candidate.exists():
            return candidate
        i += 1


def find_file(
    path: PathLike,
    retries: int,
    delay: float,
    sleep: Callable[[float], None] = time.sleep,
) -> Path:
    """Wait until *path* exists, probing up to *retries* times.

    Shared file systems can lag behind the process that wrote the file,
    so each probe is preceded by a *delay*-second sleep.
    """
    path = Path(path)
    if path.exists():
        return path
    for attempt in range(1, retries + 1):
        sleep(delay)
        if path.exists():
            logger.debug(f"Found {path} after {attempt} retries")
            return path
    raise MissingOutputError(
        f"File {path} not found after {retries} retries", path
    )


def write_seeded_key_file(
    key_file: PathLike, out_file: PathLike, seed: int
) -> Path:
    """Copy a restraint key file, prepending a ``RANDOMSEED`` directive."""
    out_file = Path(out_file)
    content = Path(key_file).read_text()
    out_file.write_text(f"RANDOMSEED {seed}\n{content}")
    return out_file


def remove_quietly(path: PathLike) -> bool:
    """Delete *path* if it exists; log instead of raising on failure."""
    path = Path(path)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    except OSError as exc:
        logger.warning(f"Could not remove {path}: {exc}")
        return False
    return True
