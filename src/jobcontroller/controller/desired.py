"""Desired-state assembly.

Manifesto:
    What should be running is a pure function of the catalog's declarations
    and the controller's configuration. Keeping it pure means the
    reconciler can recompute it on every tick without side effects, and it
    can be tested exhaustively without a catalog.

Steps:
    1. retain feature sets matching at least one selector
    2. retain stores in the allow-list
    3. evaluate store subscriptions against the retained feature sets
    4. group by source (consolidated) or by (source, feature set)

Feature sets no retained store subscribes to produce no job.

Tags:
    jobcontroller, reconciliation, desired-state, pure-function

Doc-Types:
    api-reference
"""

from __future__ import annotations

from collections.abc import Iterable

from jobcontroller.catalog import Catalog, CatalogSnapshot, FeatureSetFilter
from jobcontroller.core.identity import job_key
from jobcontroller.core.logging import get_logger
from jobcontroller.core.models import FeatureSet, JobSpec, Store
from jobcontroller.core.settings import ControllerSettings, FeatureSetSelector

logger = get_logger(__name__)


def compute_desired(
    snapshot: CatalogSnapshot,
    selectors: Iterable[FeatureSetSelector],
    allowed_stores: Iterable[str],
    consolidate: bool = True,
) -> dict[str, JobSpec]:
    """Group selected feature sets and allowed stores into desired jobs.

    Returns:
        Desired job specs keyed by job key
    """
    selectors = list(selectors)
    allowed = set(allowed_stores)

    feature_sets: dict[str, FeatureSet] = {}
    for fs in snapshot.feature_sets:
        if any(selector.matches(fs.ref) for selector in selectors):
            feature_sets[fs.reference] = fs
    stores = [store for store in snapshot.stores if store.name in allowed]

    fan_out: dict[str, dict[str, Store]] = {}
    for store in stores:
        for reference, fs in feature_sets.items():
            if store.is_subscribed_to(fs.ref):
                fan_out.setdefault(reference, {})[store.name] = store

    desired: dict[str, JobSpec] = {}
    for reference in sorted(fan_out):
        fs = feature_sets[reference]
        key = job_key(fs.source) if consolidate else job_key(fs.source, fs.ref)
        spec = desired.get(key)
        if spec is None:
            spec = desired[key] = JobSpec(key=key, source=fs.source)
        spec.stores.update(fan_out[reference])
        spec.feature_sets[reference] = fs
    return desired


class DesiredStateAssembler:
    """Reads the catalog and computes desired jobs for the configured selectors."""

    def __init__(self, catalog: Catalog, settings: ControllerSettings) -> None:
        self.catalog = catalog
        self.settings = settings

    def snapshot(self) -> CatalogSnapshot:
        """One catalog query per selector plus one store listing."""
        feature_sets: dict[str, FeatureSet] = {}
        for selector in self.settings.feature_set_selectors:
            for fs in self.catalog.list_feature_sets(
                FeatureSetFilter(project=selector.project, name=selector.name)
            ):
                feature_sets[fs.reference] = fs
        return CatalogSnapshot(
            feature_sets=list(feature_sets.values()),
            stores=self.catalog.list_stores(),
        )

    def desired(self, snapshot: CatalogSnapshot | None = None) -> dict[str, JobSpec]:
        snapshot = snapshot if snapshot is not None else self.snapshot()
        desired = compute_desired(
            snapshot,
            self.settings.feature_set_selectors,
            self.settings.whitelisted_stores,
            self.settings.consolidate_jobs_per_source,
        )
        logger.debug(
            "desired_state_computed",
            feature_sets=len(snapshot.feature_sets),
            stores=len(snapshot.stores),
            jobs=len(desired),
        )
        return desired
