# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Customer tag membership table manager."""

from __future__ import annotations

from ...sql import String, Table


class CustomerTagsTable(Table):
    """Many-to-many link between customers and tags."""

    name = "customer_tags"

    def configure(self) -> None:
        c = self.columns
        c.column("customer_id", String, nullable=False)
        c.column("tag_id", String, nullable=False)
        c.index("uq_customer_tags", "customer_id", "tag_id", unique=True)
        c.index("idx_customer_tags_tag", "tag_id")

    async def add(self, customer_id: str, tag_id: str) -> None:
        await self.insert_ignore(
            {"customer_id": customer_id, "tag_id": tag_id},
            conflict_columns=["customer_id", "tag_id"],
        )

    async def remove(self, customer_id: str, tag_id: str) -> int:
        return await self.delete(where={"customer_id": customer_id, "tag_id": tag_id})


__all__ = ["CustomerTagsTable"]
