"""Remote diagnostic capture sessions."""

from diagnostics.session_manager import (
    BlockedProcessSessionManager,
    DiagnosticSessionManager,
    SessionState,
    classify,
)

__all__ = ['BlockedProcessSessionManager', 'DiagnosticSessionManager', 'SessionState', 'classify']
