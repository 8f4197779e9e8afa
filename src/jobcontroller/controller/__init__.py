"""Reconciliation engine: desired state, reconciler, notifier, tracker and service."""

from jobcontroller.controller.desired import DesiredStateAssembler, compute_desired
from jobcontroller.controller.notifier import NotifierStats, SpecNotifier
from jobcontroller.controller.reconciler import ReconcilerStats, ReconcileReport, Reconciler
from jobcontroller.controller.service import JobControllerService
from jobcontroller.controller.tracker import Ack, AckOutcome, DeliveryTracker, TrackerStats

__all__ = [
    "Ack",
    "AckOutcome",
    "DeliveryTracker",
    "DesiredStateAssembler",
    "JobControllerService",
    "NotifierStats",
    "ReconcileReport",
    "Reconciler",
    "ReconcilerStats",
    "SpecNotifier",
    "TrackerStats",
    "compute_desired",
]
