# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Static segment membership table manager."""

from __future__ import annotations

from ...sql import String, Table


class SegmentCustomersTable(Table):
    """Customers added to a segment by hand, independent of its predicate."""

    name = "segment_customers"

    def configure(self) -> None:
        c = self.columns
        c.column("segment_id", String, nullable=False)
        c.column("customer_id", String, nullable=False)
        c.index("uq_segment_customers", "segment_id", "customer_id", unique=True)

    async def add(self, segment_id: str, customer_id: str) -> None:
        await self.insert_ignore(
            {"segment_id": segment_id, "customer_id": customer_id},
            conflict_columns=["segment_id", "customer_id"],
        )


__all__ = ["SegmentCustomersTable"]
