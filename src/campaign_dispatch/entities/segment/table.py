# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Saved segments table manager.

``filters`` holds the segment definition as JSON:
``{"logic": "and" | "or", "conditions": [{"field", "operator", "value"}, ...]}``.
"""

from __future__ import annotations

import time
import uuid
from typing import Any

from ...sql import Integer, String, Table, expand_in


class SegmentsTable(Table):
    name = "segments"

    def configure(self) -> None:
        c = self.columns
        c.column("id", String, primary_key=True)
        c.column("org_id", String, nullable=False)
        c.column("name", String)
        c.column("filters", String, json_encoded=True)
        c.column("created_at", Integer)

    async def add(self, segment: dict[str, Any]) -> str:
        segment_id = segment.get("id") or uuid.uuid4().hex
        await self.upsert(
            {
                "id": segment_id,
                "org_id": segment["org_id"],
                "name": segment.get("name"),
                "filters": segment.get("filters") or {},
                "created_at": segment.get("created_at") or int(time.time()),
            },
            conflict_columns=["id"],
        )
        return segment_id

    async def get_many(self, org_id: str, segment_ids: list[str]) -> list[dict[str, Any]]:
        """Segments of the tenant among the given ids; unknown ids are skipped."""
        if not segment_ids:
            return []
        in_sql, params = expand_in("sid", segment_ids)
        params["org_id"] = org_id
        return await self.fetch_all(
            f"SELECT * FROM segments WHERE org_id = :org_id AND id IN {in_sql}", params
        )


__all__ = ["SegmentsTable"]
