"""Client protocol versioning.

Clients send the protocol version they speak in ``X-Toprf-Protocol-Version``.
A node opens a session only when that version satisfies its configured
requirement, a comma-separated list of comparators such as
``>=1.0.0,<2.0.0``. A bare version or ``^X.Y.Z`` accepts anything from that
version up to the next major (next minor for ``0.x``).
"""

from __future__ import annotations

import operator
import re
from typing import Callable

PROTOCOL_VERSION_HEADER = "X-Toprf-Protocol-Version"
PROTOCOL_VERSION = "1.0.0"
DEFAULT_VERSION_REQUIREMENT = "^1.0.0"

Version = tuple[int, int, int]

_VERSION_RE = re.compile(r"^(0|[1-9]\d*)\.(0|[1-9]\d*)\.(0|[1-9]\d*)$")
_CLAUSE_RE = re.compile(r"^(>=|<=|==|>|<|\^)?\s*(\S+)$")
_COMPARATORS: dict[str, Callable[[Version, Version], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
    "==": operator.eq,
}


def parse_version(value: str) -> Version:
    match = _VERSION_RE.match(value.strip())
    if match is None:
        raise ValueError(f"Invalid protocol version {value!r}")
    return int(match.group(1)), int(match.group(2)), int(match.group(3))


class VersionRequirement:
    def __init__(self, spec: str) -> None:
        self.spec = spec
        self._clauses: list[tuple[Callable[[Version, Version], bool], Version]] = []
        for raw in spec.split(","):
            match = _CLAUSE_RE.match(raw.strip())
            if match is None:
                raise ValueError(f"Invalid version requirement {spec!r}")
            op = match.group(1) or "^"
            bound = parse_version(match.group(2))
            if op == "^":
                upper = (bound[0] + 1, 0, 0) if bound[0] > 0 else (0, bound[1] + 1, 0)
                self._clauses.append((operator.ge, bound))
                self._clauses.append((operator.lt, upper))
            else:
                self._clauses.append((_COMPARATORS[op], bound))

    def matches(self, version: str) -> bool:
        """Raises ``ValueError`` when ``version`` is not ``MAJOR.MINOR.PATCH``."""
        parsed = parse_version(version)
        return all(compare(parsed, bound) for compare, bound in self._clauses)

    def __str__(self) -> str:
        return self.spec
