"""
Error taxonomy shared by every component.

Validation and conflict errors are raised before any external call is made.
Tool errors abort the operation in progress. Convergence timeouts are informational:
the change was submitted but live state has not caught up yet.
"""
from typing import List, Optional

import config


class LanternError(Exception):
    """Base exception for all network management errors"""

    def to_dict(self):
        return {'error': str(self), 'type': self.__class__.__name__}


class ValidationError(LanternError):
    """Malformed desired configuration, identified by field"""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")

    def to_dict(self):
        data = super().to_dict()
        data['field'] = self.field
        return data


class ExternalToolError(LanternError):
    """An external process failed, timed out or produced unparsable output"""

    def __init__(self, tool: str, detail: str = "", returncode: Optional[int] = None,
                 timed_out: bool = False):
        self.tool = tool
        self.returncode = returncode
        self.timed_out = timed_out
        detail = (detail or "").strip()
        if len(detail) > config.TOOL_DIAGNOSTIC_LIMIT:
            detail = detail[:config.TOOL_DIAGNOSTIC_LIMIT] + "..."
        self.detail = detail

        if timed_out:
            message = f"{tool} timed out"
        elif returncode is not None:
            message = f"{tool} exited with status {returncode}"
        else:
            message = f"{tool} failed"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)

    def to_dict(self):
        data = super().to_dict()
        data.update({'tool': self.tool, 'timed_out': self.timed_out})
        return data


class ConvergenceTimeout(LanternError):
    """Live state did not reach the expected condition within the retry budget"""

    def __init__(self, interface: str, attempts: int):
        self.interface = interface
        self.attempts = attempts
        super().__init__(f"{interface}: submitted, unconfirmed after {attempts} attempts")


class ConflictError(LanternError):
    """The interface is already owned by another managed role"""

    def __init__(self, interface: str, owner: str, requested: Optional[str] = None):
        self.interface = interface
        self.owner = owner
        self.requested = requested
        message = f"{interface} is in use as {owner}"
        if requested:
            message += f", cannot use it as {requested}"
        super().__init__(message)


class OperationCancelled(LanternError):
    """An in-flight operation was superseded by a newer request"""


class StartupError(LanternError):
    """Fatal startup conditions such as missing privilege or missing tools"""

    def __init__(self, problems: List[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems))


class InvalidTransition(LanternError):
    """The requested operation is not allowed in the current state"""

    def __init__(self, interface: str, state: str, operation: str):
        self.interface = interface
        self.state = state
        self.operation = operation
        super().__init__(f"{interface}: cannot {operation} while {state}")
