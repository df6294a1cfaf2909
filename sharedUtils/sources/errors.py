"""Exceptions raised while talking to monitored sources."""

import re
from typing import Optional

# SQL Server error numbers meaning the login lacks a privilege
PERMISSION_ERROR_NUMBERS = frozenset({229, 230, 262, 297, 300})

_ERROR_NUMBER_PATTERN = re.compile(r"\((\d{3,5})\)")


class SourceError(Exception):
    """Base class for source failures."""


class SourceUnavailableError(SourceError):
    """The source could not be reached."""


class SourceQueryError(SourceError):
    """A query against a reachable source failed."""

    def __init__(self, message: str, error_number: Optional[int] = None):
        super().__init__(message)
        self.error_number = error_number if error_number is not None else parse_error_number(message)

    @property
    def is_permission_error(self) -> bool:
        return self.error_number in PERMISSION_ERROR_NUMBERS


class CollectionCancelled(SourceError):
    """The shutdown signal was raised while work was in flight."""


def parse_error_number(message: str) -> Optional[int]:
    """Pull the native error number out of an ODBC style message, e.g. '... (229)'."""
    match = _ERROR_NUMBER_PATTERN.search(message or "")
    return int(match.group(1)) if match else None
