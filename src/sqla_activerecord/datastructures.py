from __future__ import annotations

import sys
from collections.abc import Iterator, Mapping
from typing import Any, TypeVar


if sys.version_info >= (3, 11):
    from typing import Self
else:
    from typing_extensions import Self


K = TypeVar("K")
V = TypeVar("V")


class frozendict(Mapping[K, V]):  # noqa: N801
    """Immutable, insertion-ordered dictionary with hash support.

    Relation links are stored as ``frozendict`` instances: the mapping order is the
    column order of composite keys, so unlike a plain ``dict`` two frozendicts with
    the same items in a different order hash (and compare) differently.

    Example:
        >>> link = frozendict({"customer_id": "id"})
        >>> link["customer_id"]
        'id'
        >>> link.flip()
        <frozendict {'id': 'customer_id'}>
    """

    __slots__ = ("_dict", "_hash")

    def __init__(self, *args: Any, **kwargs: Any) -> None:
        self._dict: dict[K, V] = dict(*args, **kwargs)
        self._hash: int | None = None

    def __getitem__(self, key: K) -> V:
        return self._dict[key]

    def __contains__(self, key: Any) -> bool:
        return key in self._dict

    def copy(self, **add_or_replace: Any) -> Self:
        """Create a new frozendict with additional or replaced items.

        Args:
            **add_or_replace: Keyword arguments for items to add or replace.

        Returns:
            New frozendict instance with the merged items.
        """
        return type(self)(self, **add_or_replace)

    def flip(self) -> frozendict[V, K]:
        """Return a frozendict with keys and values swapped, keeping the order."""
        return frozendict((value, key) for key, value in self._dict.items())

    def __iter__(self) -> Iterator[K]:
        return iter(self._dict)

    def __len__(self) -> int:
        return len(self._dict)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self._dict!r}>"

    def __eq__(self, other: object) -> bool:
        if isinstance(other, frozendict):
            return tuple(self._dict.items()) == tuple(other._dict.items())

        if isinstance(other, dict):
            return self._dict == other

        return NotImplemented

    def __hash__(self) -> int:
        if self._hash is None:
            self._hash = hash(tuple(self._dict.items()))

        return self._hash
