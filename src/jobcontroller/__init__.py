"""
jobcontroller - Reconciliation engine for streaming feature-ingestion jobs.

Keeps long-running ingestion jobs synchronized with the feature sets and
stores declared in a catalog: computes the desired job topology, starts,
updates and replaces jobs, publishes versioned feature set specs to them and
tracks their acknowledgements.
"""

__version__ = "0.1.0"
