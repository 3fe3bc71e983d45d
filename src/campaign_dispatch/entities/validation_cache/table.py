# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""MX validation cache table manager, keyed by domain."""

from __future__ import annotations

from typing import Any

from ...sql import Integer, String, Table


class EmailValidationCacheTable(Table):
    name = "email_validation_cache"

    def configure(self) -> None:
        c = self.columns
        c.column("domain", String, primary_key=True)
        c.column("mx_valid", Integer, nullable=False)
        c.column("mx_records", String, json_encoded=True)
        c.column("checked_at", Integer, nullable=False)

    async def get(self, domain: str) -> dict[str, Any] | None:
        return await self.select_one(where={"domain": domain})

    async def put(self, domain: str, mx_valid: bool, mx_records: list[str], checked_at: int) -> None:
        await self.upsert(
            {
                "domain": domain,
                "mx_valid": 1 if mx_valid else 0,
                "mx_records": mx_records,
                "checked_at": checked_at,
            },
            conflict_columns=["domain"],
        )

    async def purge_older_than(self, threshold: int) -> int:
        return await self.execute(
            "DELETE FROM email_validation_cache WHERE checked_at < :threshold",
            {"threshold": threshold},
        )


__all__ = ["EmailValidationCacheTable"]
