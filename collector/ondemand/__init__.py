"""On-demand enrichment: ledger, admission control, execution and backlog replay."""

from .admission import AdmissionController, AdmissionResult
from .ledger import RequestLedger
from .reconciler import BacklogReconciler, ReconcileSummary
from .runner import EnrichmentRunner, RunResult
from .sanitize import normalize_term, sanitize_term
from .service import OnDemandService

__all__ = [
    "AdmissionController",
    "AdmissionResult",
    "RequestLedger",
    "BacklogReconciler",
    "ReconcileSummary",
    "EnrichmentRunner",
    "RunResult",
    "normalize_term",
    "sanitize_term",
    "OnDemandService",
]
