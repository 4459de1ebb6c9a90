"""
Sandbox Schema

Structured result returned by every sandbox executor.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field


class FileRef(BaseModel):
    """A file produced by a sandbox run (plot, CSV export, ...)."""

    name: str
    path: str
    size_bytes: int = 0


class SandboxResult(BaseModel):
    """Outcome of one ``run_code`` call."""

    success: bool
    stdout: str = ""
    stderr: str = ""
    exit_code: int
    artifacts: list[FileRef] = Field(default_factory=list)
    timed_out: bool = False
    truncated: bool = False
    wall_time_ms: Optional[int] = None
    cpu_time_ms: Optional[int] = None
    max_rss_mb: Optional[float] = None
