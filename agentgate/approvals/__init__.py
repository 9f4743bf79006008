from .types import (
    APPROVAL_STATUSES,
    DEFAULT_EXPIRATION,
    Approval,
    ApprovalCreateInput,
    ApprovalDisplay,
    ApprovalQueryOptions,
    ApprovalQueryResult,
    ApprovalUpdate,
    CreatedApproval,
    DecisionResult,
    ExpirationOptions,
    ExpirationResult,
    PlanResumption,
    TimeRemaining,
    effective_parameters,
)
from .store import ApprovalStore
from .service import ApprovalService
from .display import format_for_display, sanitize_parameters
from .expiration import (
    ExpirationJob,
    ExpirationSweeper,
    default_expiration,
    is_expiration_warning,
    time_until_expiration,
)
