"""REST API for operators: list jobs, inspect a job, force a restart, health."""

from jobcontroller.api.app import create_app

__all__ = ["create_app"]
