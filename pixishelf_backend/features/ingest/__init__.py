"""
Ingest feature - library scanning and batched persistence.
"""
from .models import ScanProgress, ScanResult, ScanState
from .progress import CancellationToken, ScanCancelled
from .scan_orchestrator import ScanAlreadyRunning, ScanOrchestrator, ScanSettings
from .service import ScanService
from .store import LibraryStore

__all__ = [
    "CancellationToken",
    "LibraryStore",
    "ScanAlreadyRunning",
    "ScanCancelled",
    "ScanOrchestrator",
    "ScanProgress",
    "ScanResult",
    "ScanService",
    "ScanSettings",
    "ScanState",
]
