"""Job identity function.

``job_key`` deterministically derives a stable key from a source (and, when
jobs are not consolidated per source, from the feature set served). Equal
sources always yield the same key regardless of field or server ordering,
which makes "does a job for this source already exist" an idempotent check
across controller restarts.

``new_job_id`` turns a key into the identifier of one job *instance*: a
replacement job for the same key (restart, version upgrade) must not reuse
the identifier of the job it replaces.
"""

from __future__ import annotations

import uuid

from jobcontroller.core.errors import InvalidSourceError
from jobcontroller.core.hashing import canonical_json, compute_hash
from jobcontroller.core.models import FeatureSetRef, Job, Source

KEY_HASH_LENGTH = 12


def _encode_source(source: Source) -> str:
    if not isinstance(source, Source):
        raise InvalidSourceError(f"Expected Source, got {type(source).__name__}")
    canonical = source.canonical()
    if not canonical["type"] or not canonical["topic"] or not canonical["bootstrap_servers"]:
        raise InvalidSourceError(f"Source is missing type, topic or servers: {source!r}")
    try:
        return canonical_json(canonical)
    except (TypeError, ValueError) as e:
        raise InvalidSourceError(f"Source cannot be encoded: {source!r}", cause=e) from e


def job_key(source: Source, feature_set: FeatureSetRef | str | None = None) -> str:
    """Stable key for the job serving *source* (and *feature_set*, if given).

    Examples:
        >>> job_key(Source("localhost:9092", "topic"))  # doctest: +ELLIPSIS
        'kafka-...'
    """
    encoded = _encode_source(source)
    if feature_set is None:
        digest = compute_hash(encoded, length=KEY_HASH_LENGTH)
    else:
        digest = compute_hash(encoded, str(feature_set), length=KEY_HASH_LENGTH)
    return f"{source.type.lower()}-{digest}"


def key_for_job(job: Job, consolidate: bool = True) -> str:
    """Recompute the key of an existing job from its own source.

    Jobs are matched to desired specs this way rather than by id, so a job
    registered outside the controller is still recognised. Without
    consolidation a job serving anything other than exactly one feature set
    gets its source-only key, which no desired spec carries.
    """
    served = job.feature_sets
    if consolidate or len(served) != 1:
        return job_key(job.source)
    return job_key(job.source, next(iter(served)))


def new_job_id(key: str) -> str:
    """Identifier for a new job instance of *key*."""
    return f"{key}-{uuid.uuid4().hex[:8]}"
