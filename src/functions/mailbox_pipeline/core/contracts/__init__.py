"""Data contracts for the mailbox pipeline."""

from .config import (
    IMPORT_TARGETS,
    CompletionSettings,
    PipelineConfig,
    RelaySettings,
    ServiceEndpointConfig,
    SupabaseSettings,
)
from .errors import (
    CompletionServiceError,
    InvalidRequestError,
    MailProviderError,
    PhaseFatalError,
    PipelineError,
    ResearchServiceError,
)
from .jobs import (
    ACTIVE_STATUSES,
    PHASE_ORDER,
    STALLABLE_STATUSES,
    TERMINAL_STATUSES,
    Job,
    JobKind,
    JobStatus,
    get_next_kind,
)
from .outcomes import OutcomeKind, PhaseOutcome
from .requests import StartPipelineRequest, TriggerRequest
from .work_items import (
    PARTITION_BUCKETS,
    Direction,
    Partition,
    WorkItem,
    WorkItemStatus,
    partition_bucket,
)

__all__ = [
    "ACTIVE_STATUSES",
    "CompletionServiceError",
    "CompletionSettings",
    "Direction",
    "IMPORT_TARGETS",
    "InvalidRequestError",
    "Job",
    "JobKind",
    "JobStatus",
    "MailProviderError",
    "OutcomeKind",
    "PARTITION_BUCKETS",
    "PHASE_ORDER",
    "Partition",
    "PhaseFatalError",
    "PhaseOutcome",
    "PipelineConfig",
    "PipelineError",
    "RelaySettings",
    "ResearchServiceError",
    "STALLABLE_STATUSES",
    "ServiceEndpointConfig",
    "StartPipelineRequest",
    "SupabaseSettings",
    "TERMINAL_STATUSES",
    "TriggerRequest",
    "WorkItem",
    "WorkItemStatus",
    "get_next_kind",
    "partition_bucket",
]
