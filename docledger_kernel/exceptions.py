"""
Typed Exception Hierarchy for the Document Ledger.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Callers (API handlers, the job runner, the escalation sweep) must react to
errors by type, never by parsing messages. Every exception therefore carries:
  1. A TYPED class (catch by type, not message)
  2. A CODE class attribute (machine-readable, API-safe)
  3. Structured DATA as attributes (job_id, period, actor, ...)

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    DocLedgerError (base)
    |
    +-- JobError
    |   +-- JobNotFoundError
    |   +-- InvalidJobTransitionError
    |   +-- AlreadyPostedError
    |   +-- JobReferencedError
    |   +-- ApprovalRequiredError
    |   +-- PolicyRejectedError
    |   +-- PostingAuthorityError
    |
    +-- DuplicateError
    |   +-- OverrideReasonError
    |
    +-- ApprovalError
    |   +-- ApprovalNotFoundError
    |   +-- ApprovalStateError
    |   +-- ApprovalAuthorityError
    |   +-- DuplicateApproverError
    |   +-- ApprovalEscalationError
    |
    +-- SequenceError
    |   +-- InvalidVoucherSeriesError
    |   +-- InvalidVoucherNumberError
    |
    +-- PeriodError
    |   +-- PeriodNotFoundError
    |   +-- PeriodStateError
    |   +-- PeriodNotWritableError
    |
    +-- CurrencyError
    |   +-- UnsupportedCurrencyError
    |
    +-- ImmutabilityViolationError
    +-- ConfigurationError
    +-- ExternalServiceError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category   | Code                         | When Raised
-----------|------------------------------|-----------------------------------------
Job        | JOB_NOT_FOUND                | Job ID doesn't exist
           | INVALID_JOB_TRANSITION       | Status change not in transition table
           | ALREADY_POSTED               | Job already carries a voucher number
           | JOB_REFERENCED               | Delete attempted on a posted job
           | APPROVAL_REQUIRED            | Posting while the approval request is open
           | POLICY_REJECTED              | Posting a job the accounting policy rejects
           | POSTING_NOT_AUTHORIZED       | Direct posting above the actor's tier
-----------|------------------------------|-----------------------------------------
Duplicate  | OVERRIDE_REASON_INVALID      | Override reason shorter than 10 chars
-----------|------------------------------|-----------------------------------------
Approval   | APPROVAL_NOT_FOUND           | Request ID doesn't exist
           | APPROVAL_INVALID_STATE       | Action not allowed in current status
           | APPROVAL_NOT_AUTHORIZED      | Actor role below the required role
           | APPROVAL_DUPLICATE_APPROVER  | Same actor approves a request twice
           | APPROVAL_ESCALATION_FAILED   | Already at the top tier
-----------|------------------------------|-----------------------------------------
Sequence   | INVALID_VOUCHER_SERIES       | Series letter not configured
           | INVALID_VOUCHER_NUMBER       | Number does not parse
-----------|------------------------------|-----------------------------------------
Period     | PERIOD_NOT_FOUND             | No period row for (company, year, month)
           | PERIOD_INVALID_STATE         | Lifecycle transition not allowed
           | PERIOD_NOT_WRITABLE          | Posting into a period that is not OPEN
-----------|------------------------------|-----------------------------------------
Currency   | UNSUPPORTED_CURRENCY         | Currency code not supported
-----------|------------------------------|-----------------------------------------
Other      | IMMUTABILITY_VIOLATION       | Update/delete of an append-only row
           | CONFIGURATION_ERROR          | Company configuration is malformed
           | EXTERNAL_SERVICE_ERROR       | OCR / classifier / ERP / store failed

===============================================================================
HANDLING PATTERNS
===============================================================================

1. STAGE FAILURES are scoped to one job:

    try:
        run_stage(job)
    except DocLedgerError as e:
        mark_error(job, f"{e.code}: {e}")

2. IDEMPOTENT POSTING (AlreadyPostedError is success):

    try:
        voucher = post(job_id)
    except AlreadyPostedError as e:
        voucher = e.voucher_number

3. AUTHORIZATION is checked before any state change:

    except ApprovalAuthorityError as e:
        return {"error": e.code, "required_role": e.required_role}
"""


class DocLedgerError(Exception):
    """
    Base exception for all document ledger errors.

    All subclasses carry a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "DOCLEDGER_ERROR"


# Job exceptions


class JobError(DocLedgerError):
    """Base exception for document job errors."""

    code: str = "JOB_ERROR"


class JobNotFoundError(JobError):
    """Document job with given ID was not found."""

    code: str = "JOB_NOT_FOUND"

    def __init__(self, job_id: str):
        self.job_id = str(job_id)
        super().__init__(f"Document job not found: {job_id}")


class InvalidJobTransitionError(JobError):
    """Job status change is not in the transition table."""

    code: str = "INVALID_JOB_TRANSITION"

    def __init__(self, job_id: str, from_status: str, to_status: str):
        self.job_id = str(job_id)
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Job {job_id} cannot move from {from_status} to {to_status}"
        )


class AlreadyPostedError(JobError):
    """Job already has a voucher number. Callers treat this as success."""

    code: str = "ALREADY_POSTED"

    def __init__(self, job_id: str, voucher_number: str):
        self.job_id = str(job_id)
        self.voucher_number = voucher_number
        super().__init__(f"Job {job_id} already posted as {voucher_number}")


class JobReferencedError(JobError):
    """Job is referenced by a posted voucher and cannot be deleted."""

    code: str = "JOB_REFERENCED"

    def __init__(self, job_id: str, voucher_number: str):
        self.job_id = str(job_id)
        self.voucher_number = voucher_number
        super().__init__(
            f"Job {job_id} is referenced by voucher {voucher_number}"
        )


class ApprovalRequiredError(JobError):
    """The job has an approval request that has not been approved."""

    code: str = "APPROVAL_REQUIRED"

    def __init__(self, job_id: str, request_id: str, status: str):
        self.job_id = str(job_id)
        self.request_id = str(request_id)
        self.status = status
        super().__init__(
            f"Job {job_id} cannot be posted: approval request {request_id} is {status}"
        )


class PolicyRejectedError(JobError):
    """The accounting policy rejects the job's classification."""

    code: str = "POLICY_REJECTED"

    def __init__(self, job_id: str, rule: str | None):
        self.job_id = str(job_id)
        self.rule = rule
        super().__init__(f"Job {job_id} is rejected by accounting policy rule {rule}")


class PostingAuthorityError(JobError):
    """Direct posting of a job whose amount needs a more senior role."""

    code: str = "POSTING_NOT_AUTHORIZED"

    def __init__(self, job_id: str, actor_id: str, actor_role: str | None, required_role: str):
        self.job_id = str(job_id)
        self.actor_id = actor_id
        self.actor_role = actor_role
        self.required_role = required_role
        super().__init__(
            f"Actor {actor_id} with role {actor_role} cannot post job {job_id}; requires {required_role}"
        )


# Duplicate exceptions


class DuplicateError(DocLedgerError):
    """Base exception for duplicate detection errors."""

    code: str = "DUPLICATE_ERROR"


class OverrideReasonError(DuplicateError):
    """Override reason is missing or too short."""

    code: str = "OVERRIDE_REASON_INVALID"

    def __init__(self, reason: str | None, min_length: int):
        self.reason = reason
        self.min_length = min_length
        super().__init__(
            f"Override reason must be at least {min_length} characters"
        )


# Approval exceptions


class ApprovalError(DocLedgerError):
    """Base exception for approval workflow errors."""

    code: str = "APPROVAL_ERROR"


class ApprovalNotFoundError(ApprovalError):
    """Approval request with given ID was not found."""

    code: str = "APPROVAL_NOT_FOUND"

    def __init__(self, request_id: str):
        self.request_id = str(request_id)
        super().__init__(f"Approval request not found: {request_id}")


class ApprovalStateError(ApprovalError):
    """Action is not allowed in the request's current status."""

    code: str = "APPROVAL_INVALID_STATE"

    def __init__(self, request_id: str, status: str, action: str):
        self.request_id = str(request_id)
        self.status = status
        self.action = action
        super().__init__(
            f"Cannot {action} approval request {request_id} in status {status}"
        )


class ApprovalAuthorityError(ApprovalError):
    """Actor's role is below the role required by the request's tier."""

    code: str = "APPROVAL_NOT_AUTHORIZED"

    def __init__(self, request_id: str, actor_id: str, actor_role: str, required_role: str):
        self.request_id = str(request_id)
        self.actor_id = actor_id
        self.actor_role = actor_role
        self.required_role = required_role
        super().__init__(
            f"Actor {actor_id} with role {actor_role} cannot act on request "
            f"{request_id}; requires {required_role}"
        )


class DuplicateApproverError(ApprovalError):
    """The same actor tried to approve a request twice."""

    code: str = "APPROVAL_DUPLICATE_APPROVER"

    def __init__(self, request_id: str, actor_id: str):
        self.request_id = str(request_id)
        self.actor_id = actor_id
        super().__init__(f"Actor {actor_id} has already approved request {request_id}")


class ApprovalEscalationError(ApprovalError):
    """Request is already at the highest tier."""

    code: str = "APPROVAL_ESCALATION_FAILED"

    def __init__(self, request_id: str, level: str):
        self.request_id = str(request_id)
        self.level = level
        super().__init__(
            f"Approval request {request_id} is already at the highest level {level}"
        )


# Sequence exceptions


class SequenceError(DocLedgerError):
    """Base exception for voucher numbering errors."""

    code: str = "SEQUENCE_ERROR"


class InvalidVoucherSeriesError(SequenceError):
    """Series letter is not one of the configured voucher series."""

    code: str = "INVALID_VOUCHER_SERIES"

    def __init__(self, series: str):
        self.series = series
        super().__init__(f"Invalid voucher series: {series!r}")


class InvalidVoucherNumberError(SequenceError):
    """Voucher number string does not parse."""

    code: str = "INVALID_VOUCHER_NUMBER"

    def __init__(self, number: str):
        self.number = number
        super().__init__(f"Invalid voucher number: {number!r}")


# Period exceptions


class PeriodError(DocLedgerError):
    """Base exception for period lifecycle errors."""

    code: str = "PERIOD_ERROR"


class PeriodNotFoundError(PeriodError):
    """No period row exists for the given company and month."""

    code: str = "PERIOD_NOT_FOUND"

    def __init__(self, company_id: str, period_key: str):
        self.company_id = company_id
        self.period_key = period_key
        super().__init__(f"Period {period_key} not found for company {company_id}")


class PeriodStateError(PeriodError):
    """Lifecycle transition not allowed from the period's status."""

    code: str = "PERIOD_INVALID_STATE"

    def __init__(self, period_key: str, status: str, action: str):
        self.period_key = period_key
        self.status = status
        self.action = action
        super().__init__(f"Cannot {action} period {period_key} in status {status}")


class PeriodNotWritableError(PeriodError):
    """Posting attempted into a period that is not OPEN."""

    code: str = "PERIOD_NOT_WRITABLE"

    def __init__(self, company_id: str, period_key: str, status: str):
        self.company_id = company_id
        self.period_key = period_key
        self.status = status
        super().__init__(
            f"Period {period_key} is {status}; postings are not allowed"
        )


# Currency exceptions


class CurrencyError(DocLedgerError):
    """Base exception for currency conversion errors."""

    code: str = "CURRENCY_ERROR"


class UnsupportedCurrencyError(CurrencyError):
    """Currency code is not in the supported set."""

    code: str = "UNSUPPORTED_CURRENCY"

    def __init__(self, currency: str):
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency}")


# Cross-cutting exceptions


class ImmutabilityViolationError(DocLedgerError):
    """Attempt to modify or delete an append-only record."""

    code: str = "IMMUTABILITY_VIOLATION"

    def __init__(self, entity_type: str, entity_id: str, reason: str):
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.reason = reason
        super().__init__(f"Cannot modify {entity_type} {entity_id}: {reason}")


class ConfigurationError(DocLedgerError):
    """Company configuration is malformed."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"Invalid configuration for {key}: {message}")


class ExternalServiceError(DocLedgerError):
    """An external collaborator (OCR, classifier, ERP, store) failed."""

    code: str = "EXTERNAL_SERVICE_ERROR"

    def __init__(self, service: str, message: str):
        self.service = service
        super().__init__(f"{service} failed: {message}")
