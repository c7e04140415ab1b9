"""Renderer-agnostic view models."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class TableModel:
    title: str
    columns: list[str]
    rows: list[list[str]]
