"""In-memory catalog.

Holds declarations in dictionaries behind a lock and hands out copies, so
callers can never mutate catalog state except through the CAS operations.
``apply_feature_set`` / ``apply_store`` play the role of the catalog's
write API for operators and tests.
"""

from __future__ import annotations

import copy
import threading

from jobcontroller.catalog import FeatureSetFilter
from jobcontroller.core.errors import CatalogError, ConcurrentModificationError, ErrorContext
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import FeatureSet, FeatureSetRef, FeatureSetStatus, Store

logger = get_logger(__name__)


def _ref(ref: FeatureSetRef | str) -> FeatureSetRef:
    return ref if isinstance(ref, FeatureSetRef) else FeatureSetRef.parse(ref)


class InMemoryCatalog:
    """Thread-safe catalog of feature sets and stores.

    Example:
        >>> catalog = InMemoryCatalog()
        >>> catalog.apply_store(Store("online", subscriptions=(Subscription("*", "*"),)))
        >>> catalog.apply_feature_set(FeatureSet("default", "test", Source("kafka:9092", "events")))
    """

    def __init__(self) -> None:
        self._feature_sets: dict[FeatureSetRef, FeatureSet] = {}
        self._stores: dict[str, Store] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Declarations
    # ------------------------------------------------------------------

    def apply_feature_set(self, feature_set: FeatureSet) -> FeatureSet:
        """Create or update a feature set declaration.

        The version is owned by the catalog: it is kept on update and starts
        at 0 for new feature sets. A content change resets status to PENDING.
        """
        with self._lock:
            current = self._feature_sets.get(feature_set.ref)
            applied = copy.deepcopy(feature_set)
            if current is None:
                applied.version = 0
                applied.status = FeatureSetStatus.PENDING
                logger.info("feature_set_created", feature_set=applied.reference)
            else:
                applied.version = current.version
                if applied.fingerprint() != current.fingerprint():
                    applied.status = FeatureSetStatus.PENDING
                    logger.info("feature_set_updated", feature_set=applied.reference)
                else:
                    applied.status = current.status
            self._feature_sets[applied.ref] = applied
            return copy.deepcopy(applied)

    def delete_feature_set(self, ref: FeatureSetRef | str) -> bool:
        with self._lock:
            return self._feature_sets.pop(_ref(ref), None) is not None

    def apply_store(self, store: Store) -> Store:
        with self._lock:
            self._stores[store.name] = store
        return store

    def delete_store(self, name: str) -> bool:
        with self._lock:
            return self._stores.pop(name, None) is not None

    # ------------------------------------------------------------------
    # Catalog capability
    # ------------------------------------------------------------------

    def list_feature_sets(self, filter: FeatureSetFilter | None = None) -> list[FeatureSet]:
        filter = filter or FeatureSetFilter()
        with self._lock:
            return [
                copy.deepcopy(fs)
                for ref, fs in sorted(self._feature_sets.items())
                if filter.matches(ref)
            ]

    def get_feature_set(self, ref: FeatureSetRef | str) -> FeatureSet | None:
        with self._lock:
            fs = self._feature_sets.get(_ref(ref))
            return copy.deepcopy(fs) if fs is not None else None

    def list_stores(self) -> list[Store]:
        with self._lock:
            return [self._stores[name] for name in sorted(self._stores)]

    def update_feature_set_status(
        self,
        ref: FeatureSetRef | str,
        status: FeatureSetStatus,
        expected_version: int,
    ) -> bool:
        with self._lock:
            fs = self._feature_sets.get(_ref(ref))
            if fs is None or fs.version != expected_version:
                return False
            fs.status = status
            return True

    def advance_feature_set_version(self, ref: FeatureSetRef | str, expected_version: int) -> FeatureSet:
        key = _ref(ref)
        with self._lock:
            fs = self._feature_sets.get(key)
            if fs is None:
                raise CatalogError(
                    f"Feature set not found: {key}",
                    context=ErrorContext(feature_set=str(key)),
                )
            if fs.version != expected_version:
                raise ConcurrentModificationError(
                    f"Feature set {key} is at version {fs.version}, expected {expected_version}",
                    context=ErrorContext(feature_set=str(key), version=fs.version),
                )
            fs.version += 1
            fs.status = FeatureSetStatus.PENDING
            return copy.deepcopy(fs)
