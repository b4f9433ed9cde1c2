"""Error taxonomy and centralized error handling."""

import traceback
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional, Dict, Any

from logging_config import get_logger

logger = get_logger(__name__)


class WorktreeError(Exception):
    """Base class for every error the core reports to its callers."""

    kind = "Error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = {k: (str(v) if isinstance(v, Path) else v) for k, v in details.items()}

    def to_payload(self) -> Dict[str, Any]:
        """Serializable form carried in `{id, error}` responses."""
        return {"message": self.message, "kind": self.kind, "details": self.details}


class NotAGitRepository(WorktreeError):
    kind = "NotAGitRepository"

    def __init__(self, path: Path, stderr: str = ""):
        super().__init__(f"{path} is not a git repository", path=path, stderr=stderr)
        self.path = path


class PathCollision(WorktreeError):
    kind = "PathCollision"

    def __init__(self, path: Path):
        super().__init__(f"A directory already exists at {path}", path=path)
        self.path = path


class BranchInUse(WorktreeError):
    kind = "BranchInUse"

    def __init__(self, branch: str, worktree_path: Path):
        super().__init__(
            f"Branch '{branch}' is already checked out at {worktree_path}",
            branch=branch,
            worktree_path=worktree_path,
        )
        self.branch = branch
        self.worktree_path = worktree_path


class SubprocessFailure(WorktreeError):
    kind = "SubprocessFailure"

    def __init__(self, args: list[str], exit_code: int, stderr: str):
        # stderr is kept verbatim; only the summary line is trimmed
        summary = stderr.strip() or f"{' '.join(args)} exited with code {exit_code}"
        super().__init__(summary, args=list(args), exit_code=exit_code, stderr=stderr)
        self.args_list = list(args)
        self.exit_code = exit_code
        self.stderr = stderr


class NotFound(WorktreeError):
    kind = "NotFound"


class Unmerged(WorktreeError):
    kind = "Unmerged"

    def __init__(self, branch: str, target: str):
        super().__init__(
            f"Branch '{branch}' is not fully merged into '{target}'.",
            branch=branch,
            target=target,
        )
        self.branch = branch
        self.target = target


class PersistenceUnavailable(WorktreeError):
    kind = "PersistenceUnavailable"


class MalformedListing(WorktreeError):
    kind = "MalformedListing"

    def __init__(self, line_number: int, line: str):
        super().__init__(
            f"Worktree listing line {line_number} has an attribute before any worktree path: {line!r}",
            line_number=line_number,
            line=line,
        )


class PartialArchive(WorktreeError):
    kind = "PartialArchive"

    def __init__(self, path: Path, branch: str, worktree_removed: bool, branch_deleted: bool, reason: str):
        super().__init__(
            f"Worktree {'removed' if worktree_removed else 'kept'} at {path}, "
            f"but branch '{branch}' was {'deleted' if branch_deleted else 'not deleted'}: {reason}",
            path=path,
            branch=branch,
            worktree_removed=worktree_removed,
            branch_deleted=branch_deleted,
        )
        self.worktree_removed = worktree_removed
        self.branch_deleted = branch_deleted


class SessionConflict(WorktreeError):
    kind = "SessionConflict"


class SessionBackpressure(WorktreeError):
    """Input for a session is arriving faster than its process consumes it."""

    kind = "SessionBackpressure"


class ErrorSeverity(Enum):
    """Error severity levels for user feedback."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better organization."""
    GIT_OPERATION = "git_operation"
    FILE_SYSTEM = "file_system"
    CONFIGURATION = "configuration"
    SESSION_MANAGEMENT = "session_management"
    TRANSPORT = "transport"
    UNKNOWN = "unknown"


@dataclass
class ErrorInfo:
    """Structured error information."""
    category: ErrorCategory
    severity: ErrorSeverity
    message: str
    user_message: str
    payload: Dict[str, Any]
    context: Dict[str, Any] = field(default_factory=dict)
    traceback_str: Optional[str] = None


class ErrorHandler:
    """Turns exceptions into log entries, error-log lines and response payloads."""

    def __init__(self, error_log=None):
        # error_log: anything with record_error(source, message)
        self.error_log = error_log

    def handle_error(
        self,
        exception: Exception,
        source: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        severity: ErrorSeverity = ErrorSeverity.ERROR,
        context: Optional[Dict[str, Any]] = None
    ) -> ErrorInfo:
        """Handle an error with logging and build the payload sent to the caller."""
        expected = isinstance(exception, WorktreeError)
        traceback_str = None
        if not expected:
            traceback_str = "".join(
                traceback.format_exception(type(exception), exception, exception.__traceback__)
            )

        if expected:
            payload = exception.to_payload()
        else:
            payload = {"message": str(exception) or type(exception).__name__,
                       "kind": "InternalError", "details": {}}

        error_info = ErrorInfo(
            category=category,
            severity=severity,
            message=str(exception),
            user_message=self._generate_user_message(exception, category),
            payload=payload,
            context=context or {},
            traceback_str=traceback_str,
        )
        payload["userMessage"] = error_info.user_message

        self._log_error(error_info, exception if not expected else None)

        if self.error_log is not None:
            self.error_log.record_error(source, traceback_str or error_info.message)

        return error_info

    def _log_error(self, error_info: ErrorInfo, exception: Optional[Exception]):
        """Log error information appropriately based on severity."""
        log_message = f"[{error_info.category.value}] {error_info.message}"

        if error_info.context:
            log_message += f" | Context: {error_info.context}"

        exc_info = (type(exception), exception, exception.__traceback__) if exception else None
        if error_info.severity == ErrorSeverity.CRITICAL:
            logger.critical(log_message, exc_info=exc_info)
        elif error_info.severity == ErrorSeverity.ERROR:
            logger.error(log_message, exc_info=exc_info)
        elif error_info.severity == ErrorSeverity.WARNING:
            logger.warning(log_message)
        else:
            logger.info(log_message)

    def _generate_user_message(self, exception: Exception, category: ErrorCategory) -> str:
        """Generate user-friendly error message."""
        if isinstance(exception, Unmerged):
            return f"{exception.message} Archive anyway to discard its unmerged commits."
        if isinstance(exception, PathCollision):
            return f"A worktree already exists at {exception.path}. Please choose a different name."
        if isinstance(exception, NotAGitRepository):
            return "The selected directory is not a Git repository. Please choose a valid Git repository."
        if isinstance(exception, BranchInUse):
            return (f"Branch '{exception.branch}' is already checked out in another worktree. "
                    f"Open that worktree instead.")
        if isinstance(exception, SubprocessFailure):
            return self._generate_git_user_message(exception)

        if category == ErrorCategory.GIT_OPERATION:
            return f"Git operation failed: {str(exception)}"
        elif category == ErrorCategory.FILE_SYSTEM:
            return f"File system error: {str(exception)}"
        elif category == ErrorCategory.CONFIGURATION:
            return f"Configuration error: {str(exception)}"
        elif category == ErrorCategory.SESSION_MANAGEMENT:
            return f"Session management error: {str(exception)}"
        elif category == ErrorCategory.TRANSPORT:
            return f"Request failed: {str(exception)}"
        else:
            return f"An unexpected error occurred: {str(exception)}"

    def _generate_git_user_message(self, exception: SubprocessFailure) -> str:
        """Generate user-friendly Git error message."""
        error_msg = exception.stderr.lower()
        operation = " ".join(exception.args_list[:2]) if exception.args_list else "git"

        if "not a git repository" in error_msg:
            return "The selected directory is not a Git repository. Please choose a valid Git repository."
        elif "permission denied" in error_msg:
            return f"Permission denied while running '{operation}'. Check file permissions."
        elif "already exists" in error_msg:
            return "A branch or worktree with that name already exists. Please choose a different name."
        elif "already checked out" in error_msg or "is already used by worktree" in error_msg:
            return "That branch is already checked out in another worktree."
        elif "conflict" in error_msg:
            return f"'{operation}' stopped because of conflicts. Resolve them in the worktree and retry."
        else:
            return f"Git operation '{operation}' failed: {exception.message}"
