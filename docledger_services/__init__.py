"""
docledger_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines with database
    sessions and the external collaborators (object store, OCR,
    classifier, rate providers, ERP).  This is the only layer that
    commits transactions or calls out of process.

Architecture position:
    Services -- stateful orchestration over engines + kernel.

    Dependency direction (checked by tests/architecture/test_layer_boundaries.py):
        docledger_services/ -> docledger_engines/  (allowed)
        docledger_services/ -> docledger_kernel/   (allowed)
        docledger_services/ -> docledger_config/   (allowed)
        docledger_engines/  -> docledger_services/ (FORBIDDEN)
        docledger_kernel/   -> docledger_services/ (FORBIDDEN)

Audit relevance:
    This package is the import surface for API and UI layers.
"""

from docledger_services.currency import (
    Conversion,
    CurrencyService,
    ExchangeDifference,
    ProviderChain,
    RateQuote,
)
from docledger_services.facade import DocLedger, build_docledger
from docledger_services.period_close import PeriodCloseOrchestrator
from docledger_services.pipeline import PipelineOrchestrator
from docledger_services.ports import (
    DetectedReceipt,
    DocumentClassifier,
    ErpClient,
    FileSystemObjectStore,
    ImagePreprocessor,
    InMemoryObjectStore,
    NoPeriodization,
    ObjectStore,
    OcrService,
    PassthroughPreprocessor,
    PeriodizationAdvisor,
    RateProvider,
)
from docledger_services.runner import InlineJobRunner, JobRunner, ThreadPoolJobRunner
from docledger_services.scheduler import ApprovalEscalationScheduler

__all__ = [
    "ApprovalEscalationScheduler",
    "Conversion",
    "CurrencyService",
    "DetectedReceipt",
    "DocLedger",
    "DocumentClassifier",
    "ErpClient",
    "ExchangeDifference",
    "FileSystemObjectStore",
    "ImagePreprocessor",
    "InMemoryObjectStore",
    "InlineJobRunner",
    "JobRunner",
    "NoPeriodization",
    "ObjectStore",
    "OcrService",
    "PassthroughPreprocessor",
    "PeriodCloseOrchestrator",
    "PeriodizationAdvisor",
    "PipelineOrchestrator",
    "ProviderChain",
    "RateProvider",
    "RateQuote",
    "ThreadPoolJobRunner",
    "build_docledger",
]
