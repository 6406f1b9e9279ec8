"""
Custom exception hierarchy for environment provisioning.
Provides structured error handling with context preservation.

`recoverable` doubles as the retryable flag carried by Failed terminal events.
"""

from typing import Optional, Dict, Any
from datetime import datetime, timezone


class ProvisioningBaseException(Exception):
    """Base exception for all provisioning-related errors"""

    def __init__(
        self,
        message: str,
        error_code: str,
        context: Optional[Dict[str, Any]] = None,
        recoverable: bool = False
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}
        self.recoverable = recoverable
        self.timestamp = datetime.now(timezone.utc)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize exception for logging/API responses"""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "recoverable": self.recoverable,
            "context": self.context,
            "timestamp": self.timestamp.isoformat()
        }


class DetectionAmbiguousError(ProvisioningBaseException):
    """Probe could not conclusively determine state (treated as Missing)"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="DETECTION_AMBIGUOUS",
            context=context,
            recoverable=True
        )


class TransientIOError(ProvisioningBaseException):
    """Network blip or file lock - safe to retry"""

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: str = "TRANSIENT_IO"
    ):
        super().__init__(
            message=message,
            error_code=error_code,
            context=context,
            recoverable=True
        )


class FileLockedError(TransientIOError):
    """A file is still held open by another process"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(message, context=context, error_code="FILE_LOCKED")


class PermissionDeniedError(ProvisioningBaseException):
    """Elevation declined or insufficient rights - needs user action"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="PERMISSION_DENIED",
            context=context,
            recoverable=False
        )


class VerificationMismatchError(ProvisioningBaseException):
    """Installer reported success but the dependency is still not detected"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="VERIFICATION_MISMATCH",
            context=context,
            recoverable=True  # Usually PATH not refreshed yet
        )


class InstallCancelledError(ProvisioningBaseException):
    """User cancelled the install (not a failure)"""

    def __init__(self, message: str = "Installation cancelled", context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="CANCELLED",
            context=context,
            recoverable=True
        )


class InstallerError(ProvisioningBaseException):
    """Installer process failed for a reason we could not classify"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="INSTALL_FAILED",
            context=context,
            recoverable=False
        )


class DownloadError(ProvisioningBaseException):
    """Remote artifact could not be fetched (bad URL, 4xx)"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="DOWNLOAD_FAILED",
            context=context,
            recoverable=False
        )


class ExecutableNotFoundError(ProvisioningBaseException):
    """Executable to spawn does not exist"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="EXECUTABLE_NOT_FOUND",
            context=context,
            recoverable=False
        )


class ResourceExhaustedError(ProvisioningBaseException):
    """Out of disk space"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="RESOURCE_EXHAUSTED",
            context=context,
            recoverable=True  # Can retry after freeing space
        )


class InvalidStateTransitionError(ProvisioningBaseException):
    """Operation not legal in the dependency's current state"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="INVALID_TRANSITION",
            context=context,
            recoverable=False
        )


class PrerequisiteMissingError(ProvisioningBaseException):
    """Package/Model requested while the interpreter is not installed"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="PREREQUISITE_MISSING",
            context=context,
            recoverable=False
        )


class EnvironmentNotReadyError(ProvisioningBaseException):
    """OCR feature used before its environment is ready"""

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        super().__init__(
            message=message,
            error_code="ENVIRONMENT_NOT_READY",
            context=context,
            recoverable=False
        )


class ApiKeyError(ProvisioningBaseException):
    """Mutating route called without a valid X-API-Key while REQUIRE_AUTH is on"""

    def __init__(self, message: str, missing: bool):
        super().__init__(
            message=message,
            error_code="API_KEY_MISSING" if missing else "API_KEY_INVALID",
            recoverable=False
        )
        self.status_code = 401 if missing else 403
