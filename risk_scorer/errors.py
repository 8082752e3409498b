"""
Error taxonomy for the risk decision engine
"""

from typing import Any, Dict, Optional


class ErrorCodes:
    """Standard error codes"""
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DEPENDENCY_ERROR = "DEPENDENCY_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    CONFIGURATION_ERROR = "CONFIGURATION_ERROR"


class RiskEngineError(Exception):
    """Base class for every error raised by the engine"""
    code = "RISK_ENGINE_ERROR"

    def __init__(self, message: str, context: Optional[Dict[str, Any]] = None):
        self.message = message
        self.context = context or {}
        super().__init__(message)


class TransactionValidationError(RiskEngineError):
    """Malformed transaction; rejected before any scoring happens"""
    code = ErrorCodes.VALIDATION_ERROR

    def __init__(self, message: str, errors: Optional[list] = None):
        super().__init__(message, {"errors": errors or []})
        self.errors = errors or []


class DependencyError(RiskEngineError):
    """An external lookup failed, timed out or returned malformed data"""
    code = ErrorCodes.DEPENDENCY_ERROR

    def __init__(self, dependency: str, message: str, original_error: Optional[BaseException] = None):
        super().__init__(message, {"dependency": dependency})
        self.dependency = dependency
        self.original_error = original_error


class DependencyTimeout(DependencyError):
    code = ErrorCodes.TIMEOUT_ERROR


class ConfigurationError(RiskEngineError):
    """Invalid engine wiring; fatal at start-up"""
    code = ErrorCodes.CONFIGURATION_ERROR
