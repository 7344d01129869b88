"""Host pattern resolution for fleetplay.

Patterns select hosts from an inventory. Terms are separated by ``:`` or
``,`` and combined left to right:

- ``web``          union with group (or host) ``web``
- ``web:&prod``    intersection
- ``web:!staging`` exclusion
- ``web*``         glob against host and group names
- ``~web\\d+``      regular expression against host and group names
- ``web[0]``, ``web[0:2]``  subscript of a group's hosts (inclusive end)

The result is always ordered by inventory insertion order, never by the
order terms were resolved, so resolving the same pattern twice against the
same inventory yields the same list.
"""

import fnmatch
import re
from dataclasses import dataclass

from .exceptions import UnknownGroupError
from .inventory import ALL_GROUP, Inventory

UNION = "union"
INTERSECT = "intersect"
EXCLUDE = "exclude"

_SUBSCRIPT = re.compile(r"^(?P<base>.+?)\[(?P<start>-?\d+)(?::(?P<end>-?\d*))?\]$")


@dataclass(frozen=True)
class PatternTerm:
    """One operand of a pattern expression.

    Attributes:
        op: union, intersect, or exclude
        atom: Host name, group name, glob, regex (``~``), or subscript
    """

    op: str
    atom: str


def split_pattern(pattern: str) -> list[str]:
    """Split a pattern on ``:`` and ``,`` outside of brackets."""
    parts: list[str] = []
    depth = 0
    current = ""
    for char in pattern:
        if char == "[":
            depth += 1
        elif char == "]":
            depth = max(0, depth - 1)
        if char in ":," and depth == 0:
            parts.append(current)
            current = ""
        else:
            current += char
    parts.append(current)
    return [part.strip() for part in parts if part.strip()]


def parse_pattern(pattern: str) -> list[PatternTerm]:
    """Parse a pattern string into an ordered list of set operations.

    A pattern whose first term is an intersection or exclusion starts from
    ``all``.

    Example:
        >>> parse_pattern("web:&prod:!web03")
        [PatternTerm(op='union', atom='web'), PatternTerm(op='intersect', atom='prod'),
         PatternTerm(op='exclude', atom='web03')]
    """
    terms: list[PatternTerm] = []
    for part in split_pattern(pattern):
        if part.startswith("&"):
            terms.append(PatternTerm(INTERSECT, part[1:]))
        elif part.startswith("!"):
            terms.append(PatternTerm(EXCLUDE, part[1:]))
        else:
            terms.append(PatternTerm(UNION, part))

    if terms and terms[0].op != UNION:
        terms.insert(0, PatternTerm(UNION, ALL_GROUP))
    return terms


def _is_glob(atom: str) -> bool:
    return any(char in atom for char in "*?[")


class PatternResolver:
    """Resolves patterns against a loaded inventory.

    Pure: resolution reads the inventory index and never mutates it.

    Attributes:
        inventory: Inventory to resolve against
        strict: Raise UnknownGroupError when an atom matches nothing
    """

    def __init__(self, inventory: Inventory, strict: bool = False) -> None:
        self.inventory = inventory
        self.strict = strict

    def resolve(self, pattern: str) -> list[str]:
        """Resolve a pattern to an ordered, deduplicated list of host names."""
        selected: set[str] = set()
        for term in parse_pattern(pattern):
            hosts = set(self.expand_atom(term.atom))
            if term.op == UNION:
                selected |= hosts
            elif term.op == INTERSECT:
                selected &= hosts
            else:
                selected -= hosts
        return self._ordered(selected)

    def expand_atom(self, atom: str) -> list[str]:
        """Expand one atom to host names.

        Raises:
            UnknownGroupError: In strict mode, if the atom matches nothing
        """
        hosts = self._expand(atom)
        if not hosts and self.strict:
            raise UnknownGroupError(atom)
        return hosts

    def _expand(self, atom: str) -> list[str]:
        inventory = self.inventory
        if atom in (ALL_GROUP, "*"):
            return list(inventory.hosts)

        match = _SUBSCRIPT.match(atom)
        if match and not (atom in inventory.hosts or atom in inventory.groups):
            base = self._expand(match.group("base"))
            if base:
                return self._subscript(base, match.group("start"), match.group("end"))

        if atom.startswith("~"):
            regex = re.compile(atom[1:])
            return self._union_names(
                [g for g in inventory.groups if regex.search(g)],
                [h for h in inventory.hosts if regex.search(h)],
            )

        if atom in inventory.hosts or atom in inventory.groups:
            return self._union_names(
                [atom] if atom in inventory.groups else [],
                [atom] if atom in inventory.hosts else [],
            )

        if _is_glob(atom):
            return self._union_names(
                fnmatch.filter(inventory.groups, atom),
                fnmatch.filter(inventory.hosts, atom),
            )
        return []

    def _union_names(self, groups: list[str], hosts: list[str]) -> list[str]:
        selected = set(hosts)
        for group in groups:
            selected.update(self.inventory.group_hosts(group))
        return self._ordered(selected)

    @staticmethod
    def _subscript(hosts: list[str], start: str, end: str | None) -> list[str]:
        first = int(start)
        if end is None:
            try:
                return [hosts[first]]
            except IndexError:
                return []
        last = int(end) if end else len(hosts) - 1
        if last < 0:
            last += len(hosts)
        if first < 0:
            first += len(hosts)
        return hosts[first:last + 1]

    def _ordered(self, names: set[str]) -> list[str]:
        return [name for name in self.inventory.hosts if name in names]


def resolve_hosts(
    inventory: Inventory,
    pattern: str,
    limit: str | None = None,
    strict: bool = False,
) -> list[str]:
    """Resolve a play's host pattern, optionally restricted by a limit pattern.

    Args:
        inventory: Inventory to resolve against
        pattern: Play host pattern
        limit: Optional ``--limit`` pattern intersected with the result
        strict: Raise UnknownGroupError on atoms matching nothing

    Returns:
        Host names in inventory order

    Example:
        >>> resolve_hosts(inventory, "web:!staging")
        ['w1']
    """
    resolver = PatternResolver(inventory, strict=strict)
    hosts = resolver.resolve(pattern)
    if limit:
        allowed = set(resolver.resolve(limit))
        hosts = [host for host in hosts if host in allowed]
    return hosts

