# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exception hierarchy for the PortMail service.

Every error carries a short machine ``code`` so that the API layer can map
it onto an HTTP status and a JSON body without string matching.

Per-job delivery failures are not exceptions: the dispatcher records them
as result values. Only conditions that stop a whole operation are raised.
"""

from __future__ import annotations


class PortMailError(RuntimeError):
    """Base class for all service errors."""

    code = "portmail_error"

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__doc__ or self.code)


class ConfigurationError(PortMailError):
    """Raised when required configuration (credentials, paths, backends) is missing or invalid."""

    code = "configuration_error"


class StoreError(PortMailError):
    """Raised when the job store cannot be queried or updated."""

    code = "store_error"


class AttachmentError(PortMailError):
    """Raised by a fetcher when an attachment cannot be read."""

    code = "attachment_error"

    def __init__(self, message: str | None = None, *, not_found: bool = False):
        super().__init__(message)
        self.not_found = not_found


class NotFoundError(PortMailError):
    """Raised when a requested record does not exist."""

    code = "not_found"


class JobStateError(PortMailError):
    """Raised when a job action is not allowed from the job's current status."""

    code = "invalid_transition"


class InvalidRequestError(PortMailError):
    """Raised when a command payload is incomplete or inconsistent."""

    code = "invalid_request"
