"""Job controller core -- primitives shared by every layer.

Manifesto:
    The reconciliation engine is built from small, separately testable
    pieces: a version codec, a job identity function, typed models, a
    structured error hierarchy, structured logging, settings, leases,
    deadlines and the notification channel. None of them knows about the
    control loop.

Architecture::

    versioning.py      Semantic version <-> label-safe token codec
    hashing.py         Canonical JSON + content hashes
    identity.py        job_key / key_for_job / new_job_id
    models/            Source, Store, FeatureSet, Job, JobSpec
    errors.py          ControllerError hierarchy (category, retryable)
    logging.py         structlog configuration and LogContext
    settings.py        ControllerSettings (pydantic-settings) + YAML loader
    locks.py           Per-key TTL leases
    timeout.py         Deadlines for capability calls
    events/            EventBus protocol, in-memory and Kafka backends

Tags:
    jobcontroller, core, primitives

Doc-Types:
    architecture
"""
