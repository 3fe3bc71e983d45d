# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Campaign dispatch: multi-tenant email campaign delivery core.

Turns a campaign definition into individually tracked, retried and
suppressed outbound sends driven by a leased job queue over a single
relational store.
"""

__version__ = "0.3.0"
