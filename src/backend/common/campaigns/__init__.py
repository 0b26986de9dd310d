from .models import (
    Campaign,
    DerivedField,
    ExtractionJob,
    ExtractionMode,
    ExtractionQueries,
    JobKind,
    JobStatus,
    LedgerLinkage,
    MappingSpec,
    ProcessingJob,
    RecordStatus,
    RecordSummary,
    SourceDescriptor,
    TransactionRecord,
    new_id,
    utcnow,
)
