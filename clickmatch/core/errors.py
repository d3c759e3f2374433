"""
Error taxonomy.

  INPUT_INVALID       malformed purchase input, surfaced to the caller, never retried
  STORE_UNAVAILABLE   store timeout / connection failure, caller retries with backoff
  CLAIM_CONFLICT      click already claimed, retried inside the matching engine
  PLATFORM_TRANSIENT  retried by the sync pipeline up to the attempt cap
  PLATFORM_PERMANENT  terminal for the record, never blocks the rest of a batch
"""

from enum import Enum


class ErrorTag(str, Enum):
    INPUT_INVALID = "INPUT_INVALID"
    STORE_UNAVAILABLE = "STORE_UNAVAILABLE"
    CLAIM_CONFLICT = "CLAIM_CONFLICT"
    PLATFORM_TRANSIENT = "PLATFORM_TRANSIENT"
    PLATFORM_PERMANENT = "PLATFORM_PERMANENT"
    PLATFORM_TIMEOUT = "PLATFORM_TIMEOUT"
    ATTEMPTS_EXHAUSTED = "ATTEMPTS_EXHAUSTED"
    MISSING_CLICK_ID = "MISSING_CLICK_ID"
    IN_FLIGHT = "IN_FLIGHT"


class ClickmatchError(Exception):
    tag: ErrorTag

    def __init__(self, message: str = ""):
        super().__init__(message or self.tag.value)


class InputInvalidError(ClickmatchError):
    tag = ErrorTag.INPUT_INVALID


class StoreUnavailableError(ClickmatchError):
    tag = ErrorTag.STORE_UNAVAILABLE


class PlatformError(ClickmatchError):
    tag = ErrorTag.PLATFORM_TRANSIENT


class PlatformTransientError(PlatformError):
    tag = ErrorTag.PLATFORM_TRANSIENT


class PlatformPermanentError(PlatformError):
    tag = ErrorTag.PLATFORM_PERMANENT
