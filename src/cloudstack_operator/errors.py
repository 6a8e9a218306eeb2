"""Error taxonomy for provider interactions.

CloudStack reports most failures as free text. Reconciliation stages need a
closed set of outcomes to decide between fallback creation, requeue and
terminal failure, so every exception raised below a stage is mapped into
ErrorKind by classify_error().

CLASSIFICATION RULES:
- Typed operator errors carry their kind directly
- azure-core transport errors (connection refused, timeouts) are TRANSIENT
- CloudStackAPIError messages are matched against KNOWN_PHRASES
- Anything unrecognized is OTHER, which the stage runner treats as terminal
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from azure.core.exceptions import (
    HttpResponseError,
    ResourceExistsError,
    ResourceNotFoundError,
    ServiceRequestError,
    ServiceResponseError,
)


class ErrorKind(str, Enum):
    """Closed set of outcomes a failed provider interaction can have."""

    NOT_FOUND = "NotFound"
    AMBIGUOUS = "AmbiguousMatch"
    ALREADY_EXISTS = "AlreadyExists"
    TRANSIENT = "Transient"
    PARTIAL_TRANSITION = "PartialTransition"
    FATAL = "Fatal"
    OTHER = "Other"


class CloudStackOperatorError(Exception):
    """Base class for classified operator errors."""

    kind: ErrorKind = ErrorKind.OTHER


class NotFoundError(CloudStackOperatorError):
    """The provider reported zero matches for a lookup."""

    kind = ErrorKind.NOT_FOUND


class AmbiguousMatchError(CloudStackOperatorError):
    """The provider reported more than one match where exactly one is required."""

    kind = ErrorKind.AMBIGUOUS


class AlreadyExistsError(CloudStackOperatorError):
    """The provider rejected a create as a duplicate."""

    kind = ErrorKind.ALREADY_EXISTS


class TransientError(CloudStackOperatorError):
    """Temporary condition; the object should be requeued with backoff."""

    kind = ErrorKind.TRANSIENT


class FatalError(CloudStackOperatorError):
    """Provider-side misconfiguration that needs operator action."""

    kind = ErrorKind.FATAL


class NoAddressesFoundError(NotFoundError):
    """No public IP address candidates exist in the requested scope."""


class AllAllocatedError(NotFoundError):
    """Every public IP address candidate is already allocated."""


class PartialTransitionError(CloudStackOperatorError):
    """A stop/update/start transition stopped part way through.

    The instance may be left stopped. The transition state recorded on the
    machine tells the next reconciliation where to resume.
    """

    kind = ErrorKind.PARTIAL_TRANSITION

    def __init__(self, message: str, *, instance_id: str, completed_step: str) -> None:
        super().__init__(message)
        self.instance_id = instance_id
        self.completed_step = completed_step


class CloudStackAPIError(HttpResponseError):
    """Error response returned by the CloudStack API.

    Attributes:
        errortext: Free-text message from the provider.
        error_code: HTTP-style error code from the response body (431, 530, ...).
        cs_error_code: CloudStack internal exception code (4350, 9999, ...).
    """

    def __init__(
        self,
        errortext: str,
        *,
        command: str | None = None,
        error_code: int | None = None,
        cs_error_code: int | None = None,
    ) -> None:
        super().__init__(message=errortext)
        self.errortext = errortext
        self.command = command
        self.error_code = error_code
        self.cs_error_code = cs_error_code
        self.status_code = error_code


@dataclass(frozen=True)
class KnownPhrase:
    """A provider message fragment with the kind it implies."""

    phrase: str
    kind: ErrorKind
    case_insensitive: bool


# Order matters: the first matching phrase wins. Each entry keeps its own
# case sensitivity.
KNOWN_PHRASES: tuple[KnownPhrase, ...] = (
    KnownPhrase("no match found", ErrorKind.NOT_FOUND, case_insensitive=True),
    KnownPhrase("no load balancer rule found", ErrorKind.NOT_FOUND, case_insensitive=True),
    KnownPhrase("there is already", ErrorKind.ALREADY_EXISTS, case_insensitive=True),
    KnownPhrase("found more than one", ErrorKind.AMBIGUOUS, case_insensitive=True),
    KnownPhrase("not found", ErrorKind.NOT_FOUND, case_insensitive=False),
    KnownPhrase("Unable to find", ErrorKind.NOT_FOUND, case_insensitive=False),
)

# CloudStack exception codes that signal a temporary control plane condition
TRANSIENT_CS_ERROR_CODES = frozenset({4365, 4370, 9999})
# 4365: ConcurrentOperationException, 4370: InsufficientCapacityException,
# 9999: CloudRuntimeException raised while another job holds the resource lock

ACS_ERROR_CODE_PATTERN = re.compile(r"CloudStack error code:?\s*(\d+)|cserrorcode[\"']?\s*[:=]\s*(\d+)")


def classify_message(message: str) -> ErrorKind:
    """Classify a free-text provider message.

    Args:
        message: Raw provider message.

    Returns:
        Kind of the first KNOWN_PHRASES entry found in the message, or OTHER.
    """
    lowered = message.lower()
    for known in KNOWN_PHRASES:
        haystack = lowered if known.case_insensitive else message
        needle = known.phrase.lower() if known.case_insensitive else known.phrase
        if needle in haystack:
            return known.kind
    return ErrorKind.OTHER


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception raised during reconciliation into ErrorKind.

    Args:
        error: The exception to classify.

    Returns:
        The ErrorKind that drives requeue or terminal handling.
    """
    if isinstance(error, CloudStackOperatorError):
        return error.kind

    if isinstance(error, (ServiceRequestError, ServiceResponseError, TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT

    if isinstance(error, ResourceNotFoundError):
        return ErrorKind.NOT_FOUND

    if isinstance(error, ResourceExistsError):
        return ErrorKind.ALREADY_EXISTS

    if isinstance(error, CloudStackAPIError):
        kind = classify_message(error.errortext)
        if kind == ErrorKind.OTHER and error.cs_error_code in TRANSIENT_CS_ERROR_CODES:
            return ErrorKind.TRANSIENT
        return kind

    if isinstance(error, HttpResponseError):
        if error.status_code is not None and error.status_code >= 500 and error.status_code != 530:
            return ErrorKind.TRANSIENT
        return classify_message(str(error.message))

    return ErrorKind.OTHER


def is_terminal(kind: ErrorKind) -> bool:
    """Check whether an error kind stops the pipeline without requeue."""
    return kind in (ErrorKind.AMBIGUOUS, ErrorKind.FATAL, ErrorKind.OTHER)


def get_acs_error_code(error: BaseException) -> str:
    """Extract the CloudStack exception code from an error.

    Returns:
        The code as a string, or "unknown" when none is present.
    """
    if isinstance(error, CloudStackAPIError) and error.cs_error_code is not None:
        return str(error.cs_error_code)

    match = ACS_ERROR_CODE_PATTERN.search(str(error))
    if match:
        return match.group(1) or match.group(2)
    return "unknown"
