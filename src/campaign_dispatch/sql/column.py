# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Column definitions for Table schemas."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

String = "TEXT"
Integer = "INTEGER"
Real = "REAL"


@dataclass
class Column:
    """A single column definition.

    ``default`` is rendered verbatim when it is a string expression
    (e.g. ``"'pending'"``) and as a literal otherwise.
    """

    name: str
    type_: str
    primary_key: bool = False
    nullable: bool = True
    default: Any = None
    unique: bool = False
    json_encoded: bool = False

    def to_sql(self) -> str:
        parts = [f'"{self.name}"', self.type_]
        if self.primary_key:
            parts.append("PRIMARY KEY")
        if not self.nullable and not self.primary_key:
            parts.append("NOT NULL")
        if self.unique:
            parts.append("UNIQUE")
        if self.default is not None:
            if isinstance(self.default, str):
                parts.append(f"DEFAULT {self.default}")
            else:
                parts.append(f"DEFAULT {self.default!r}")
        return " ".join(parts)


@dataclass
class Index:
    """Named index over one or more columns."""

    name: str
    columns: tuple[str, ...]
    unique: bool = False

    def to_sql(self, table: str) -> str:
        kind = "UNIQUE INDEX" if self.unique else "INDEX"
        cols = ", ".join(f'"{c}"' for c in self.columns)
        return f"CREATE {kind} IF NOT EXISTS {self.name} ON {table} ({cols})"


class Columns(dict[str, Column]):
    """Ordered column registry populated from ``Table.configure()``."""

    def __init__(self) -> None:
        super().__init__()
        self.indexes: list[Index] = []

    def column(
        self,
        name: str,
        type_: str,
        *,
        primary_key: bool = False,
        nullable: bool = True,
        default: Any = None,
        unique: bool = False,
        json_encoded: bool = False,
    ) -> Column:
        col = Column(
            name=name,
            type_=type_,
            primary_key=primary_key,
            nullable=nullable,
            default=default,
            unique=unique,
            json_encoded=json_encoded,
        )
        self[name] = col
        return col

    def index(self, name: str, *columns: str, unique: bool = False) -> Index:
        idx = Index(name=name, columns=tuple(columns), unique=unique)
        self.indexes.append(idx)
        return idx

    def json_columns(self) -> list[str]:
        return [c.name for c in self.values() if c.json_encoded]

    def primary_key(self) -> str | None:
        for col in self.values():
            if col.primary_key:
                return col.name
        return None


__all__ = ["Column", "Columns", "Index", "Integer", "Real", "String"]
