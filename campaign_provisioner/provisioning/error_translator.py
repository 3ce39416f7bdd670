"""
Error Translator

Turns provisioning failures into messages an operator can act on. The raw
error text stays in the job's error history for support; users only see the
translated message and its category.
"""
import asyncio
import re
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional, Union

from .errors import (
    BudgetExhaustedError,
    CredentialUnavailableError,
    IdempotencyConflict,
    NotFoundError,
    PermanentRemoteError,
    ProvisioningError,
    RateLimitedError,
    RequestDeferredError,
    TransientRemoteError,
    ValidationError,
)
from .platform_gateway import (
    INVALID_CREDENTIAL_CODES,
    INVALID_PARAMETER_CODES,
    PERMISSION_CODES,
    RATE_LIMIT_CODES,
)

MAX_DETAIL_LENGTH = 200

SPENDING_RESTRICTED_CODE = 2635
POLICY_VIOLATION_CODE = 1487741


@dataclass(frozen=True)
class UserError:
    message: str
    category: str
    code: Optional[str] = None
    retryable: bool = True
    technical: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def simplify_message(message: str) -> str:
    """Strip platform codes, trace fragments and prefixes, then cap the length."""
    simplified = re.sub(r"\(#\d+\)", "", message or "")
    simplified = re.sub(r"\bat\s+[\w.]+:\d+:\d+", "", simplified)
    simplified = re.sub(r"\b\w*Error:\s*", "", simplified)
    simplified = " ".join(simplified.split())
    if len(simplified) > MAX_DETAIL_LENGTH:
        simplified = simplified[:MAX_DETAIL_LENGTH - 3] + "..."
    return simplified


def _code_of(code: Any) -> Optional[int]:
    try:
        return int(code)
    except (TypeError, ValueError):
        return None


def _label(code: Any) -> Optional[str]:
    return str(code) if code is not None else None


def _from_platform(code: Any, message: str) -> UserError:
    """Translation by platform error code, then by message content."""
    number = _code_of(code)
    label = _label(code)
    lowered = (message or "").lower()

    if number in RATE_LIMIT_CODES or "rate limit" in lowered or "request limit" in lowered:
        return UserError(
            "The platform's request limit was reached. The job waits for the limit to reset and continues.",
            "rate_limit", label,
        )
    if number in INVALID_CREDENTIAL_CODES or number in PERMISSION_CODES or "access token" in lowered \
            or "permission" in lowered or "not authorized" in lowered:
        return UserError(
            "The access token expired or lacks permissions. Reconnect the ad account and submit again.",
            "permissions", label, retryable=False,
        )
    if number == SPENDING_RESTRICTED_CODE:
        return UserError(
            "The ad account has spending restrictions. Check the account settings on the platform.",
            "account", label, retryable=False,
        )
    if "account" in lowered and any(m in lowered for m in ("suspended", "disabled", "closed")):
        return UserError(
            "The ad account is suspended or disabled. Resolve it on the platform and submit again.",
            "account", label, retryable=False,
        )
    if number == POLICY_VIOLATION_CODE or "policy" in lowered or "prohibited" in lowered:
        return UserError(
            "The content violates the platform's advertising policies. Review the names and settings.",
            "policy", label, retryable=False,
        )
    if number in INVALID_PARAMETER_CODES and "budget" in lowered:
        return UserError(
            "The budget settings are invalid. Check that daily and lifetime budgets meet the platform minimum.",
            "budget", label, retryable=False,
        )
    if number in INVALID_PARAMETER_CODES and ("targeting" in lowered or "audience" in lowered):
        return UserError(
            "The targeting settings are invalid or too narrow. Adjust the audience and submit again.",
            "targeting", label, retryable=False,
        )
    if number in INVALID_PARAMETER_CODES:
        return UserError(
            f"Invalid campaign settings: {simplify_message(message)}",
            "invalid_param", label, retryable=False, technical=True,
        )
    if any(m in lowered for m in ("timeout", "timed out", "unavailable", "network", "bad gateway")):
        return UserError(
            "The platform is temporarily unavailable. The request is retried automatically.",
            "network", label,
        )
    return UserError(
        f"The platform reported an error: {simplify_message(message)}",
        "unknown", label, technical=True,
    )


def translate_error(error: Union[BaseException, str, None], code: Any = None) -> UserError:
    """
    Translate an exception, or the text of a recorded error, into a UserError.

    Args:
        error: The failure. Strings are matched by code and content.
        code: Platform error code when the caller only has the text
    """
    if error is None:
        return UserError("No error was recorded.", "none", retryable=False)
    if isinstance(error, str):
        return _from_platform(code, error)

    if isinstance(error, ValidationError):
        detail = "; ".join(error.reasons) if error.reasons else simplify_message(str(error))
        return UserError(f"The request was rejected: {detail}", "validation", retryable=False)
    if isinstance(error, CredentialUnavailableError):
        return UserError(
            "No usable credential is configured for this ad account. Reconnect the account and submit again.",
            "credentials", retryable=False,
        )
    if isinstance(error, RequestDeferredError):
        minutes = max(1, round(error.requeue_after / 60))
        return UserError(
            f"The platform's request limit was reached. The job is paused and resumes in about {minutes} minutes.",
            "rate_limit",
        )
    if isinstance(error, BudgetExhaustedError):
        return UserError(
            "The platform kept failing temporarily. The step is retried in the next round.",
            "network",
        )
    if isinstance(error, IdempotencyConflict):
        return UserError("The request is being submitted concurrently. Try again in a moment.", "conflict")
    if isinstance(error, NotFoundError):
        return UserError(
            "A resource the job depends on no longer exists on the platform.",
            "not_found", _label(error.code), retryable=False,
        )
    if isinstance(error, RateLimitedError):
        return UserError(
            "The platform's request limit was reached. The job waits for the limit to reset and continues.",
            "rate_limit", _label(error.code),
        )
    if isinstance(error, (TransientRemoteError, OSError, asyncio.TimeoutError)):
        return UserError(
            "The platform is temporarily unavailable. The request is retried automatically.",
            "network", _label(getattr(error, "code", None)),
        )
    if isinstance(error, PermanentRemoteError):
        translated = _from_platform(error.code, str(error))
        if translated.category in ("unknown", "network"):
            # Permanent by classification even if the text reads otherwise
            return UserError(translated.message, translated.category, translated.code,
                             retryable=False, technical=True)
        return translated
    if isinstance(error, ProvisioningError):
        return UserError(simplify_message(str(error)), "provisioning", technical=True)
    return UserError(
        "An unexpected internal error stopped this job. Support has the details.",
        "internal", retryable=False, technical=True,
    )
