"""In-memory group tree of a program.

``Root`` is the program, ``Branch`` a group and ``Leaf`` an observation.
Children are listed in index order. The program root behaves as an implicit
unordered AND group: every immediate child must be executed.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Union

__all__ = ["Branch", "Child", "GroupElement", "GroupTree", "Leaf", "Root"]


@dataclass(frozen=True)
class GroupElement:
    """One slot of a parent's ordered child list."""

    parent_id: str | None
    index: int
    group_id: str | None = None
    observation_id: str | None = None

    @property
    def element_id(self) -> str:
        return self.group_id or self.observation_id  # type: ignore[return-value]


class _Node:
    """Search helpers shared by every tree node."""

    def walk(self) -> Iterator[GroupTree]:
        """Depth-first, pre-order."""
        stack: list[GroupTree] = [self]  # type: ignore[list-item]
        while stack:
            current = stack.pop()
            yield current
            stack.extend(reversed(getattr(current, "children", [])))

    def find_group(self, group_id: str) -> Branch | None:
        """Return the branch for ``group_id`` anywhere under this node."""
        for node in self.walk():
            if isinstance(node, Branch) and node.group_id == group_id:
                return node
        return None

    def find_groups_with_observations(
        self,
        predicate: Callable[[Branch], bool],
    ) -> list[tuple[str, list[str]]]:
        """
        Find all groups matching ``predicate`` with their direct observations.

        Parameters
        ----------
        predicate : Callable[[Branch], bool]
            Group filter

        Returns
        -------
        list[tuple[str, list[str]]]
            ``(group_id, observation_ids)`` in pre-order
        """
        return [
            (node.group_id, node.observation_ids)
            for node in self.walk()
            if isinstance(node, Branch) and predicate(node)
        ]

    def find_group_containing(
        self,
        observation_id: str,
        predicate: Callable[[Branch], bool] = lambda _: True,
    ) -> str | None:
        """Return the first matching group that directly contains ``observation_id``."""
        for node in self.walk():
            if (
                isinstance(node, Branch)
                and predicate(node)
                and observation_id in node.observation_ids
            ):
                return node.group_id
        return None


@dataclass
class Leaf(_Node):
    observation_id: str


@dataclass
class Branch(_Node):
    group_id: str
    children: list[Child] = field(default_factory=list)
    min_required: int | None = None
    ordered: bool = False
    name: str | None = None
    description: str | None = None
    min_interval: timedelta | None = None
    max_interval: timedelta | None = None
    system: bool = False
    calibration_roles: list[str] = field(default_factory=list)

    @property
    def observation_ids(self) -> list[str]:
        return [c.observation_id for c in self.children if isinstance(c, Leaf)]


@dataclass
class Root(_Node):
    program_id: str
    children: list[Child] = field(default_factory=list)

    @property
    def min_required(self) -> int | None:
        return None

    @property
    def ordered(self) -> bool:
        return False


Child = Union[Branch, Leaf]
GroupTree = Union[Root, Branch, Leaf]
