# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Pydantic models and status vocabularies for campaign dispatch.

Models:
    - RecipientFilters: declarative recipient selection criteria
    - ResolvedRecipient: one concrete address produced by resolution
    - RetryPolicy: backoff parameters for one failure category
    - SuppressionCreate: payload for explicit suppressions/unsubscribes
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class CampaignStatus(str, Enum):
    DRAFT = "draft"
    SCHEDULED = "scheduled"
    SENDING = "sending"
    SENT = "sent"
    PAUSED = "paused"
    CANCELLED = "cancelled"


class JobStatus(str, Enum):
    QUEUED = "queued"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    BOUNCED = "bounced"


class FailureCategory(str, Enum):
    """Classification of a failed delivery attempt.

    ``HARD_BOUNCE`` and ``INVALID_ADDRESS`` are terminal; the others are
    retried according to the category's :class:`RetryPolicy`.
    """

    HARD_BOUNCE = "hard_bounce"
    SOFT_BOUNCE = "soft_bounce"
    RATE_LIMITED = "rate_limited"
    INVALID_ADDRESS = "invalid_address"
    TRANSPORT_ERROR = "transport_error"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self not in (FailureCategory.HARD_BOUNCE, FailureCategory.INVALID_ADDRESS)


class SuppressionReason(str, Enum):
    HARD_BOUNCE = "hard_bounce"
    INVALID_ADDRESS = "invalid_address"
    UNSUBSCRIBE = "unsubscribe"
    COMPLAINT = "complaint"
    MANUAL = "manual"


class RecipientSource(str, Enum):
    CUSTOMER = "customer"
    MANUAL_EMAIL = "manual_email"


def _clean_strings(values: Any, lowercase: bool = False) -> list[str]:
    """Trim, drop blanks, dedupe and sort a list of string-ish values."""
    if values is None:
        return []
    if isinstance(values, str):
        values = [values]
    cleaned = set()
    for value in values:
        if value is None:
            continue
        text = str(value).strip()
        if lowercase:
            text = text.lower()
        if text:
            cleaned.add(text)
    return sorted(cleaned)


class RecipientFilters(BaseModel):
    """Recipient selection criteria for one campaign.

    Values within one list are alternatives; different lists must all be
    satisfied. Every list is trimmed, deduplicated and sorted on construction, so two
    filters built from the same values in a different order compare equal.
    Keys are accepted in snake_case or in the composer's camelCase.

    Attributes:
        cities: Customer city names (exact match).
        tags: Tag ids; a customer carrying any of them matches.
        segments: Saved segment ids; a member of any of them matches.
        categories: Customer category names (exact match).
        customer_ids: Customers to include regardless of other criteria.
        raw_emails: Manually entered addresses.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    cities: Annotated[list[str], Field(default_factory=list)]
    tags: Annotated[
        list[str],
        Field(default_factory=list, validation_alias=AliasChoices("tags", "tagIds", "tag_ids")),
    ]
    segments: Annotated[
        list[str],
        Field(
            default_factory=list,
            validation_alias=AliasChoices("segments", "segmentIds", "segment_ids"),
        ),
    ]
    categories: Annotated[list[str], Field(default_factory=list)]
    customer_ids: Annotated[
        list[str],
        Field(default_factory=list, validation_alias=AliasChoices("customer_ids", "customerIds")),
    ]
    raw_emails: Annotated[
        list[str],
        Field(
            default_factory=list,
            validation_alias=AliasChoices("raw_emails", "rawEmails", "manualEmails", "manual_emails"),
        ),
    ]

    @field_validator("cities", "tags", "segments", "categories", "customer_ids", mode="before")
    @classmethod
    def _normalize_values(cls, v: Any) -> list[str]:
        return _clean_strings(v)

    @field_validator("raw_emails", mode="before")
    @classmethod
    def _normalize_emails(cls, v: Any) -> list[str]:
        return _clean_strings(v, lowercase=True)

    @property
    def has_criteria(self) -> bool:
        """True when any attribute-based filter is set."""
        return bool(self.cities or self.tags or self.segments or self.categories)

    @property
    def is_broad(self) -> bool:
        """True when nothing at all was specified: select every eligible customer."""
        return not (self.has_criteria or self.customer_ids or self.raw_emails)


class ResolvedRecipient(BaseModel):
    """One deduplicated address produced by recipient resolution."""

    model_config = ConfigDict(frozen=True)

    customer_id: str | None = None
    source: RecipientSource
    email: str
    display_name: str | None = None
    merge_fields: dict[str, str] = Field(default_factory=dict)

    @property
    def domain(self) -> str:
        return self.email.rsplit("@", 1)[-1]


class RetryPolicy(BaseModel):
    """Exponential backoff parameters for one failure category.

    The delay before retry ``n`` (1-based count of attempts already made) is
    ``min(max_delay_seconds, initial_delay_seconds * backoff_multiplier ** (n - 1))``.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    max_attempts: Annotated[int, Field(ge=1, le=50)]
    initial_delay_seconds: Annotated[int, Field(ge=0)]
    backoff_multiplier: Annotated[float, Field(ge=1.0)] = 2.0
    max_delay_seconds: Annotated[int, Field(ge=0)]

    def delay_for(self, attempt: int) -> int:
        attempt = max(1, attempt)
        delay = self.initial_delay_seconds * self.backoff_multiplier ** (attempt - 1)
        return int(min(self.max_delay_seconds, delay))


class SuppressionCreate(BaseModel):
    """Payload for adding an address to a tenant's suppression ledger."""

    model_config = ConfigDict(extra="forbid")

    email: Annotated[str, Field(min_length=3, max_length=254)]
    reason: SuppressionReason = SuppressionReason.MANUAL
    campaign_id: str | None = None

    @field_validator("email")
    @classmethod
    def _normalize(cls, v: str) -> str:
        return v.strip().lower()


__all__ = [
    "CampaignStatus",
    "FailureCategory",
    "JobStatus",
    "RecipientFilters",
    "RecipientSource",
    "RecipientStatus",
    "ResolvedRecipient",
    "RetryPolicy",
    "SuppressionCreate",
    "SuppressionReason",
]
