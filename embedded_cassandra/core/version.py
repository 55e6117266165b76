"""Cassandra version parsing and ordering."""

from __future__ import annotations

import functools
import re
from dataclasses import dataclass, field
from typing import Optional

_VERSION_PATTERN = re.compile(r"^([0-9]+)\.([0-9]+)(\.([0-9]+))?(-([^\\/]+))?$")


@functools.total_ordering
@dataclass(frozen=True, eq=False)
class Version:
    """
    Immutable ``major.minor[.patch][-qualifier]`` version.

    A missing patch compares as ``0``; a qualified version sorts before the
    same unqualified version (``4.0.0-beta1 < 4.0.0``).
    """

    major: int
    minor: int
    patch: Optional[int] = None
    qualifier: Optional[str] = None
    text: str = field(default="", compare=False)

    @classmethod
    def parse(cls, version: str) -> "Version":
        if version is None or not str(version).strip():
            raise ValueError("Version must not be None or blank")
        text = str(version).strip()
        match = _VERSION_PATTERN.match(text)
        if match is None:
            raise ValueError(f"Version '{version}' is invalid")
        patch = int(match.group(4)) if match.group(4) is not None else None
        return cls(
            major=int(match.group(1)),
            minor=int(match.group(2)),
            patch=patch,
            qualifier=match.group(6),
            text=text,
        )

    @classmethod
    def of(cls, version: "str | Version") -> "Version":
        return version if isinstance(version, Version) else cls.parse(version)

    def _key(self):
        # unqualified releases sort after their qualified pre-releases
        qualifier = (1, "") if self.qualifier is None else (0, self.qualifier)
        return (self.major, self.minor, self.patch or 0, qualifier)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __lt__(self, other: "Version") -> bool:
        if not isinstance(other, Version):
            return NotImplemented
        return self._key() < other._key()

    def __str__(self) -> str:
        if self.text:
            return self.text
        text = f"{self.major}.{self.minor}"
        if self.patch is not None:
            text += f".{self.patch}"
        if self.qualifier:
            text += f"-{self.qualifier}"
        return text
