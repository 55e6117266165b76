"""Tar / zip extraction that skips documentation subtrees."""

from __future__ import annotations

import logging
import os
import shutil
import tarfile
import zipfile
from pathlib import Path, PurePosixPath
from typing import Iterable

logger = logging.getLogger(__name__)

DEFAULT_SKIP = ("doc", "javadoc")


def _skipped(name: str, skip: Iterable[str]) -> bool:
    return any(part in skip for part in PurePosixPath(name).parts)


def _target(destination: Path, name: str) -> Path:
    target = (destination / name).resolve()
    root = destination.resolve()
    if target != root and root not in target.parents:
        raise ValueError(f"Archive entry '{name}' escapes '{destination}'")
    return target


def extract_archive(archive: Path, destination: Path, skip: Iterable[str] = DEFAULT_SKIP) -> None:
    """
    Extract ``archive`` into ``destination``.

    Entries with any path segment in ``skip`` are not extracted. Symbolic
    links and other special entries are ignored.
    """
    archive = Path(archive)
    destination = Path(destination)
    skip = tuple(skip)
    destination.mkdir(parents=True, exist_ok=True)
    logger.info(f"Extracting '{archive}' into '{destination}'")

    if zipfile.is_zipfile(archive):
        _extract_zip(archive, destination, skip)
    elif tarfile.is_tarfile(archive):
        _extract_tar(archive, destination, skip)
    else:
        raise ValueError(f"'{archive}' is neither a tar nor a zip archive")


def _extract_tar(archive: Path, destination: Path, skip: tuple) -> None:
    with tarfile.open(archive, "r:*") as tar:
        for member in tar:
            if _skipped(member.name, skip):
                continue
            target = _target(destination, member.name)
            if member.isdir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            if not member.isfile():
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            source = tar.extractfile(member)
            if source is None:
                continue
            with source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            os.chmod(target, member.mode & 0o777)


def _extract_zip(archive: Path, destination: Path, skip: tuple) -> None:
    with zipfile.ZipFile(archive) as zf:
        for info in zf.infolist():
            if _skipped(info.filename, skip):
                continue
            target = _target(destination, info.filename)
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            with zf.open(info) as source, open(target, "wb") as out:
                shutil.copyfileobj(source, out)
            mode = (info.external_attr >> 16) & 0o777
            if mode:
                os.chmod(target, mode)
