# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Retry policy overrides per failure category.

Rows with ``org_id`` NULL apply to every tenant; tenant rows win over them.
The id is ``"<org_id or 'global'>:<category>"``.
"""

from __future__ import annotations

import time
from typing import Any

from ...sql import Integer, Real, String, Table


class EmailRetryConfigTable(Table):
    name = "email_retry_config"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("org_id", String)
        c.column("category", String, nullable=False)
        c.column("max_attempts", Integer, nullable=False)
        c.column("initial_delay_seconds", Integer, nullable=False)
        c.column("backoff_multiplier", Real, default=2.0)
        c.column("max_delay_seconds", Integer, nullable=False)
        c.column("updated_at", Integer)

    async def set_policy(
        self,
        category: str,
        *,
        max_attempts: int,
        initial_delay_seconds: int,
        backoff_multiplier: float,
        max_delay_seconds: int,
        org_id: str | None = None,
    ) -> None:
        await self.upsert(
            {
                "id": f"{org_id or 'global'}:{category}",
                "org_id": org_id,
                "category": category,
                "max_attempts": max_attempts,
                "initial_delay_seconds": initial_delay_seconds,
                "backoff_multiplier": backoff_multiplier,
                "max_delay_seconds": max_delay_seconds,
                "updated_at": int(time.time()),
            },
            conflict_columns=["id"],
        )

    async def rows_for(self, org_id: str) -> list[dict[str, Any]]:
        """Global rows first, then the tenant's rows."""
        return await self.fetch_all(
            "SELECT * FROM email_retry_config WHERE org_id IS NULL OR org_id = :org_id "
            "ORDER BY CASE WHEN org_id IS NULL THEN 0 ELSE 1 END, category",
            {"org_id": org_id},
        )


__all__ = ["EmailRetryConfigTable"]
