"""
ServiceIDSet - a set of service IDs with set-algebra helpers.

Used wherever a group of services must be referenced atomically
(a partition's membership, a bulk filter). Iteration order is sorted
so plan output and test expectations are deterministic.
"""

from typing import Iterable, Iterator

ServiceID = str


class ServiceIDSet:
    """
    A set of ServiceIDs.

    Methods that combine sets never mutate their argument; union and
    difference return new sets.
    """

    __slots__ = ("_elems",)

    def __init__(self, elems: Iterable[ServiceID] = ()):
        self._elems: set[ServiceID] = set(elems)

    @classmethod
    def from_iterable(cls, elems: Iterable[ServiceID]) -> "ServiceIDSet":
        return cls(elems)

    def add(self, elem: ServiceID) -> None:
        self._elems.add(elem)

    def add_all(self, other: "ServiceIDSet") -> None:
        """Add every element of other to this set (other is left untouched)."""
        self._elems.update(other._elems)

    def remove(self, elem: ServiceID) -> None:
        """Remove elem if present."""
        self._elems.discard(elem)

    def remove_all(self, other: "ServiceIDSet") -> None:
        """Remove the given elems from the set, if they exist."""
        self._elems.difference_update(other._elems)

    def contains(self, elem: ServiceID) -> bool:
        return elem in self._elems

    def copy(self) -> "ServiceIDSet":
        return ServiceIDSet(self._elems)

    def union(self, other: "ServiceIDSet") -> "ServiceIDSet":
        return ServiceIDSet(self._elems | other._elems)

    def difference(self, other: "ServiceIDSet") -> "ServiceIDSet":
        return ServiceIDSet(self._elems - other._elems)

    def intersection(self, other: "ServiceIDSet") -> "ServiceIDSet":
        return ServiceIDSet(self._elems & other._elems)

    def elems(self) -> list[ServiceID]:
        return sorted(self._elems)

    def size(self) -> int:
        return len(self._elems)

    def __contains__(self, elem: object) -> bool:
        return elem in self._elems

    def __iter__(self) -> Iterator[ServiceID]:
        return iter(self.elems())

    def __len__(self) -> int:
        return len(self._elems)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, ServiceIDSet):
            return NotImplemented
        return self._elems == other._elems

    def __repr__(self) -> str:
        return f"ServiceIDSet({self.elems()})"
