"""Catalog models: sources, stores, subscriptions and feature sets.

Manifesto:
    The controller treats catalog objects as read-only declarations. They
    are plain dataclasses so that desired-state assembly stays a pure
    function of its inputs and can be unit-tested without a catalog.

Tags:
    jobcontroller, models, catalog, dataclasses

Doc-Types:
    api-reference, data-model
"""

from __future__ import annotations

import fnmatch
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from jobcontroller.core.hashing import canonical_json, compute_hash


class FeatureSetStatus(str, Enum):
    """Readiness of the latest feature set version."""

    PENDING = "PENDING"
    READY = "READY"


class SourceType(str, Enum):
    KAFKA = "kafka"


# ---------------------------------------------------------------------------
# Source
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Source:
    """An origin stream (bootstrap endpoints + topic). Equality is structural."""

    bootstrap_servers: str
    topic: str
    type: str = SourceType.KAFKA.value

    def canonical(self) -> dict[str, Any]:
        """Order-independent representation used for identity hashing."""
        servers = sorted(s.strip() for s in self.bootstrap_servers.split(",") if s.strip())
        return {"type": self.type, "bootstrap_servers": servers, "topic": self.topic}

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "bootstrap_servers": self.bootstrap_servers, "topic": self.topic}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Source:
        return cls(
            bootstrap_servers=data["bootstrap_servers"],
            topic=data["topic"],
            type=data.get("type", SourceType.KAFKA.value),
        )


# ---------------------------------------------------------------------------
# Feature set
# ---------------------------------------------------------------------------


@dataclass(frozen=True, order=True)
class FeatureSetRef:
    """``(project, name)`` reference; string form ``project/name``."""

    project: str
    name: str

    def __str__(self) -> str:
        return f"{self.project}/{self.name}"

    @classmethod
    def parse(cls, reference: str) -> FeatureSetRef:
        project, sep, name = reference.partition("/")
        if not sep or not project or not name:
            raise ValueError(f"Invalid feature set reference: {reference!r}")
        return cls(project=project, name=name)


@dataclass
class FeatureSet:
    """A named, versioned schema of entities and features ingested from a source."""

    project: str
    name: str
    source: Source
    entities: dict[str, str] = field(default_factory=dict)  # name -> value type
    features: dict[str, str] = field(default_factory=dict)  # name -> value type
    version: int = 0
    status: FeatureSetStatus = FeatureSetStatus.PENDING

    @property
    def ref(self) -> FeatureSetRef:
        return FeatureSetRef(self.project, self.name)

    @property
    def reference(self) -> str:
        return str(self.ref)

    def fingerprint(self) -> str:
        """Hash of the delivered content (source + schema), excluding version/status."""
        return compute_hash(
            canonical_json(
                {
                    "project": self.project,
                    "name": self.name,
                    "source": self.source.canonical(),
                    "entities": self.entities,
                    "features": self.features,
                }
            ),
            length=16,
        )

    def to_spec(self) -> dict[str, Any]:
        """Encoded spec as published to running jobs."""
        return {
            "project": self.project,
            "name": self.name,
            "version": self.version,
            "source": self.source.to_dict(),
            "entities": [{"name": k, "value_type": v} for k, v in sorted(self.entities.items())],
            "features": [{"name": k, "value_type": v} for k, v in sorted(self.features.items())],
        }

    @classmethod
    def from_spec(cls, spec: dict[str, Any]) -> FeatureSet:
        return cls(
            project=spec["project"],
            name=spec["name"],
            source=Source.from_dict(spec["source"]),
            entities={e["name"]: e["value_type"] for e in spec.get("entities", [])},
            features={f["name"]: f["value_type"] for f in spec.get("features", [])},
            version=int(spec.get("version", 0)),
        )


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Subscription:
    """Store-side selector: glob patterns on project and name."""

    project: str
    name: str
    exclude: bool = False

    def matches(self, ref: FeatureSetRef) -> bool:
        return fnmatch.fnmatchcase(ref.project, self.project) and fnmatch.fnmatchcase(
            ref.name, self.name
        )


@dataclass(frozen=True)
class Store:
    """A named destination with subscriptions selecting the feature sets it wants."""

    name: str
    type: str = "REDIS"
    subscriptions: tuple[Subscription, ...] = ()

    def is_subscribed_to(self, ref: FeatureSetRef) -> bool:
        """True if any subscription matches and no exclusion does."""
        included = False
        for subscription in self.subscriptions:
            if not subscription.matches(ref):
                continue
            if subscription.exclude:
                return False
            included = True
        return included

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "type": self.type,
            "subscriptions": [
                {"project": s.project, "name": s.name, "exclude": s.exclude}
                for s in self.subscriptions
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Store:
        return cls(
            name=data["name"],
            type=data.get("type", "REDIS"),
            subscriptions=tuple(
                Subscription(s["project"], s["name"], bool(s.get("exclude", False)))
                for s in data.get("subscriptions", [])
            ),
        )
