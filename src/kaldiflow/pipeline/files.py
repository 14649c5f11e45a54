"""Filesystem helpers for moving stage artefacts around."""

from __future__ import annotations

import shutil
from pathlib import Path
from typing import Iterable


def concatenate(sources: Iterable[Path], target: Path, *, append: bool = False) -> int:
    """Concatenate existing ``sources`` into ``target``; returns the number of files read."""

    target.parent.mkdir(parents=True, exist_ok=True)
    count = 0
    with target.open("ab" if append else "wb") as out:
        for source in sources:
            if not source.exists():
                continue
            with source.open("rb") as handle:
                shutil.copyfileobj(handle, out)
            count += 1
    return count


def replace_dir(source: Path, target: Path) -> None:
    """Move ``source`` to ``target``, removing any previous ``target``."""

    if target.exists():
        shutil.rmtree(target)
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.move(str(source), str(target))


def copy_tree_contents(source: Path, target: Path) -> int:
    """Copy every entry of ``source`` into ``target`` (``cp -a source/* target``)."""

    target.mkdir(parents=True, exist_ok=True)
    count = 0
    for entry in sorted(source.iterdir()):
        destination = target / entry.name
        if entry.is_dir():
            shutil.copytree(entry, destination, symlinks=True, dirs_exist_ok=True)
        else:
            shutil.copy2(entry, destination)
        count += 1
    return count


__all__ = ["concatenate", "copy_tree_contents", "replace_dir"]
