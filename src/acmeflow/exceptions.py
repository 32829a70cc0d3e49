"""ACME protocol exceptions."""

from typing import Any

from pydantic import ValidationError

from acmeflow.models import AcmeErrorType, Problem


class AcmeError(Exception):
    """Base exception for everything raised by acmeflow."""


class TransportError(AcmeError):
    """The HTTP request could not be completed (connection, TLS, timeout)."""


class ProtocolError(AcmeError):
    """The CA answered with something that does not match the ACME protocol."""


class SigningError(AcmeError):
    """The account key could not produce a signature."""


class NoNonceAvailable(AcmeError):
    """The nonce cache is empty."""


class UnknownEndpoint(AcmeError):
    """The directory does not advertise the requested endpoint."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Directory has no endpoint named {name!r}")


class PollTimeout(AcmeError):
    """Polling budget exhausted before the resource reached a terminal status.

    The operation may be resumed by the caller; the resource is still being
    processed on the CA side.
    """

    def __init__(self, description: str, attempts: int, last_status: str | None = None):
        self.description = description
        self.attempts = attempts
        self.last_status = last_status
        super().__init__(
            f"Timed out polling {description} after {attempts} attempts "
            f"(last status: {last_status})"
        )


class Cancelled(AcmeError):
    """Polling was aborted by an external cancellation signal."""


class ProblemError(AcmeError):
    """Error returned by the CA as a problem document (RFC 7807).

    Args:
        problem: The parsed problem document.
        status_code: HTTP status code of the response.
        retry_after: Seconds from the Retry-After header, if any.
    """

    def __init__(
        self,
        problem: Problem,
        status_code: int | None = None,
        retry_after: int | None = None,
    ):
        self.problem = problem
        self.status_code = status_code if status_code is not None else problem.status
        self.retry_after = retry_after
        super().__init__(str(problem))

    @property
    def type(self) -> str:
        return self.problem.type

    @property
    def detail(self) -> str | None:
        return self.problem.detail

    @property
    def subproblems(self) -> list[Problem]:
        return self.problem.subproblems or []

    @classmethod
    def from_response(
        cls,
        data: Any,
        status_code: int,
        retry_after: int | None = None,
    ) -> "ProblemError":
        """Create a ProblemError from an error response body.

        Routes to the appropriate subclass based on the problem type.

        Args:
            data: Parsed JSON error body (or raw text for non-JSON bodies).
            status_code: HTTP status code.
            retry_after: Parsed Retry-After header value.

        Returns:
            ProblemError instance (or appropriate subclass).
        """
        problem = parse_problem(data, status_code)
        error_class = _PROBLEM_CLASSES.get(problem.type, ProblemError)
        return error_class(problem, status_code=status_code, retry_after=retry_after)

    @classmethod
    def from_http(cls, response: Any) -> "ProblemError":
        """Create a ProblemError from an error ``TransportResponse``."""
        try:
            body = response.json()
        except ValueError:
            body = response.text
        return cls.from_response(body, response.status_code, response.retry_after)

    @classmethod
    def wrap(cls, error: "ProblemError") -> "ProblemError":
        """Re-raise a routed problem under a more specific operation error."""
        return cls(error.problem, status_code=error.status_code, retry_after=error.retry_after)

    def get_retry_seconds(self, default: int = 3600) -> int:
        """Get retry delay, falling back to default.

        Args:
            default: Default seconds if retry_after is not set.

        Returns:
            Number of seconds to wait before retrying.
        """
        return self.retry_after if self.retry_after is not None else default


def parse_problem(data: Any, status_code: int | None = None) -> Problem:
    """Parse a problem document, tolerating bodies that are not one."""
    if isinstance(data, dict):
        try:
            problem = Problem.model_validate(data)
        except ValidationError:
            problem = Problem(detail=str(data))
    else:
        problem = Problem(detail=str(data) if data else None)
    if problem.status is None and status_code is not None:
        problem = problem.model_copy(update={"status": status_code})
    return problem


class BadNonceError(ProblemError):
    """Bad nonce error (urn:ietf:params:acme:error:badNonce)."""


class RateLimitError(ProblemError):
    """Rate limit exceeded (urn:ietf:params:acme:error:rateLimited)."""

    @property
    def rate_limit_type(self) -> str:
        """Parse specific rate limit type from detail message.

        Returns:
            Rate limit type identifier.
        """
        detail = (self.detail or "").lower()
        if "exact set" in detail:
            return "duplicate_certificate"
        elif "too many certificates" in detail:
            return "certificates_per_domain"
        elif "too many new orders" in detail:
            return "orders_per_account"
        elif "failed authorizations" in detail:
            return "failed_authorizations"
        return "unknown"


class DnsValidationError(ProblemError):
    """DNS validation failed (urn:ietf:params:acme:error:dns)."""


class CAAError(ProblemError):
    """CAA record forbids issuance (urn:ietf:params:acme:error:caa)."""


class ServerInternalError(ProblemError):
    """ACME server internal error (urn:ietf:params:acme:error:serverInternal)."""


class UnauthorizedError(ProblemError):
    """Request not authorized (urn:ietf:params:acme:error:unauthorized)."""


class AccountDoesNotExistError(ProblemError):
    """No account for this key (urn:ietf:params:acme:error:accountDoesNotExist)."""


class RegistrationRejected(ProblemError):
    """The CA refused to create or look up the account."""


class ChallengeFailed(ProblemError):
    """The CA marked the challenge invalid."""


class AuthorizationError(ProblemError):
    """The authorization is in a state that cannot lead to issuance."""


class OrderFailed(ProblemError):
    """The order became invalid or could not be finalized."""


_PROBLEM_CLASSES: dict[str, type[ProblemError]] = {
    AcmeErrorType.BAD_NONCE: BadNonceError,
    AcmeErrorType.RATE_LIMITED: RateLimitError,
    AcmeErrorType.DNS: DnsValidationError,
    AcmeErrorType.CAA: CAAError,
    AcmeErrorType.SERVER_INTERNAL: ServerInternalError,
    AcmeErrorType.UNAUTHORIZED: UnauthorizedError,
    AcmeErrorType.ACCOUNT_DOES_NOT_EXIST: AccountDoesNotExistError,
}
