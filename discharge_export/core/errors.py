"""
Export error taxonomy.

Every failure a pipeline component can surface is an ExportError subclass
carrying:
- kind: the stable taxonomy name used in ExportResult.error and metrics
- transient: whether the owning component may retry it under its RetryPolicy
- step: the pipeline state the failure was raised in (filled by the orchestrator)
"""

from typing import Optional


class ExportError(Exception):
    """Base class for classified export failures"""

    kind = "ExportError"
    transient = False

    def __init__(self, message: str, *, transient: Optional[bool] = None, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if transient is not None:
            self.transient = transient
        self.step = step

    def describe(self) -> str:
        """Human-readable cause, prefixed with the taxonomy kind"""
        text = f"{self.kind}: {self.message}"
        if self.step:
            text += f" (step: {self.step})"
        return text


# Source side


class SourceUnavailable(ExportError):
    """Source EHR unreachable, timed out, or returned a server error"""

    kind = "SourceUnavailable"
    transient = True


class SourceNotFound(ExportError):
    """DocumentReference or its Binary no longer exists in the source EHR"""

    kind = "SourceNotFound"


class SourceAuthExpired(ExportError):
    """Source access token rejected; the caller refreshes and may retry once"""

    kind = "SourceAuthExpired"


class MalformedContent(ExportError):
    """Source document is missing required fields or carries undecodable content"""

    kind = "MalformedContent"


# Identity mapping


class PatientResolutionFailed(ExportError):
    """Source patient could not be fetched or the destination mapping not persisted"""

    kind = "PatientResolutionFailed"


# Destination side


class DestinationWriteFailed(ExportError):
    """Destination FHIR read or write failed; tagged transient for connectivity issues"""

    kind = "DestinationWriteFailed"


# Notification


class PublishUnavailable(ExportError):
    """Event transport unreachable or timed out"""

    kind = "PublishUnavailable"
    transient = True


class PublishFailedAfterWrite(ExportError):
    """Publish failed for a job whose destination write had already completed"""

    kind = "PublishFailedAfterWrite"


class ExportCancelled(ExportError):
    """Job was cancelled before its destination write started"""

    kind = "ExportCancelled"


# Retrieval


class DocumentNotFound(ExportError):
    """Requested destination DocumentReference, Composition or Binary does not exist"""

    kind = "DocumentNotFound"


__all__ = [
    "ExportError",
    "SourceUnavailable",
    "SourceNotFound",
    "SourceAuthExpired",
    "MalformedContent",
    "PatientResolutionFailed",
    "DestinationWriteFailed",
    "PublishUnavailable",
    "PublishFailedAfterWrite",
    "ExportCancelled",
    "DocumentNotFound",
]
