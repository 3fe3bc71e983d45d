# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Table managers for every persisted entity."""

from .campaign import EmailCampaignsTable
from .customer import CustomersTable
from .customer_tag import CustomerTagsTable
from .delivery_event import DeliveryEventsTable
from .job import EmailJobsTable
from .recipient import CampaignRecipientsTable
from .retry_config import EmailRetryConfigTable
from .segment import SegmentsTable
from .segment_customer import SegmentCustomersTable
from .send_log import SendLogTable
from .suppression import EmailSuppressionsTable
from .tracking import EmailTrackingTable
from .validation_cache import EmailValidationCacheTable

__all__ = [
    "CampaignRecipientsTable",
    "CustomerTagsTable",
    "CustomersTable",
    "DeliveryEventsTable",
    "EmailCampaignsTable",
    "EmailJobsTable",
    "EmailRetryConfigTable",
    "EmailSuppressionsTable",
    "EmailTrackingTable",
    "EmailValidationCacheTable",
    "SegmentCustomersTable",
    "SegmentsTable",
    "SendLogTable",
]
