# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Exceptions raised by queue and campaign operations.

Recipient-level delivery failures are never raised; they are recorded on
the recipient row. These exceptions cover caller mistakes (unknown ids,
invalid state transitions) and are mapped to HTTP status codes by the API.
"""


class DispatchError(RuntimeError):
    """Base class carrying a stable machine-readable ``code``."""

    code = "dispatch_error"

    def __init__(self, message: str, code: str | None = None):
        super().__init__(message)
        if code is not None:
            self.code = code


class CampaignNotFoundError(DispatchError):
    code = "campaign_not_found"


class CampaignStateError(DispatchError):
    """The campaign's status does not allow the requested transition."""

    code = "invalid_campaign_state"


class NoRecipientsError(DispatchError):
    code = "no_recipients"


class JobNotFoundError(DispatchError):
    code = "job_not_found"


class InvalidTrackingLinkError(DispatchError):
    """A tracking link whose signature or destination does not check out."""

    code = "invalid_tracking_link"
