from .scanner import EventScanner, IndexedEvent, ReceiptUnavailableError, ScanTarget, WindowScan
from .persister import EventPersister, PersistenceError, VerificationResult
from .ingestion_engine import IngestionEngine

__all__ = [
    "EventScanner",
    "IndexedEvent",
    "ReceiptUnavailableError",
    "ScanTarget",
    "WindowScan",
    "EventPersister",
    "PersistenceError",
    "VerificationResult",
    "IngestionEngine",
]
