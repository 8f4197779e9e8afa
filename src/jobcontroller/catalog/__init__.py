"""Catalog capability.

The catalog stores feature set and store declarations. The controller only
reads declarations and writes two things back: a feature set's version
(advanced by the notifier) and its readiness status (set by the tracker).
Both writes are compare-and-swap on the version so concurrent writers
cannot move a feature set backwards.

Modules
-------
memory      InMemoryCatalog -- thread-safe reference implementation
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from jobcontroller.core.models import FeatureSet, FeatureSetRef, FeatureSetStatus, Store

__all__ = [
    "Catalog",
    "CatalogSnapshot",
    "FeatureSetFilter",
]


@dataclass(frozen=True)
class FeatureSetFilter:
    """Glob filter on project and name (``*`` matches everything)."""

    project: str = "*"
    name: str = "*"

    def matches(self, ref: FeatureSetRef) -> bool:
        return fnmatch.fnmatchcase(ref.project, self.project) and fnmatch.fnmatchcase(
            ref.name, self.name
        )


@dataclass
class CatalogSnapshot:
    """Feature sets and stores read from the catalog at one point in time."""

    feature_sets: list[FeatureSet] = field(default_factory=list)
    stores: list[Store] = field(default_factory=list)


@runtime_checkable
class Catalog(Protocol):
    """Capability interface of the catalog service."""

    def list_feature_sets(self, filter: FeatureSetFilter | None = None) -> list[FeatureSet]:
        ...

    def get_feature_set(self, ref: FeatureSetRef | str) -> FeatureSet | None:
        ...

    def list_stores(self) -> list[Store]:
        ...

    def update_feature_set_status(
        self,
        ref: FeatureSetRef | str,
        status: FeatureSetStatus,
        expected_version: int,
    ) -> bool:
        """Set *status* if the feature set is still at *expected_version*.

        Returns:
            False when the feature set is missing or has moved on
        """
        ...

    def advance_feature_set_version(self, ref: FeatureSetRef | str, expected_version: int) -> FeatureSet:
        """Bump the version to ``expected_version + 1`` and set ``PENDING``.

        Raises:
            ConcurrentModificationError: If the current version differs
            CatalogError: If the feature set does not exist
        """
        ...
