from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable


@dataclass(frozen=True)
class ExclusionSet:
    """Hosts kept out of big-item scans and consolidated reports.

    Membership is an exact match on the host name, without wildcards.
    """

    names: frozenset[str] = frozenset()

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "ExclusionSet":
        return cls(frozenset(name.strip() for name in names if name.strip()))

    @classmethod
    def from_string(cls, value: str | None) -> "ExclusionSet":
        if not value:
            return cls()
        return cls.from_names(value.split(","))

    def is_excluded(self, host: str) -> bool:
        return host in self.names

    def __contains__(self, host: object) -> bool:
        return host in self.names

    def __bool__(self) -> bool:
        return bool(self.names)

    def __str__(self) -> str:
        return ",".join(sorted(self.names))
