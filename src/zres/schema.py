from __future__ import annotations

from typing import List, Optional

from pydantic import BaseModel

from zres.engine import BuildReport
from zres.reporter import BuildWarning
from zres.tools.locator import ToolTarget


class WarningDTO(BaseModel):
    message: str
    request: Optional[str] = None
    tool: Optional[str] = None

    @classmethod
    def from_warning(cls, warning: BuildWarning) -> WarningDTO:
        return cls(
            message=warning.message,
            request=str(warning.request) if warning.request is not None else None,
            tool=warning.tool,
        )


class RunSummaryDTO(BaseModel):
    source: str
    target: str
    workspace: Optional[str] = None
    passes: int
    invocations: int
    resolved: int
    finals_run: int = 0
    finals_retracted: int = 0
    warnings: List[WarningDTO] = []

    @classmethod
    def from_report(cls, report: BuildReport) -> RunSummaryDTO:
        return cls(
            source=str(report.source),
            target=str(report.target),
            workspace=str(report.workspace) if report.workspace is not None else None,
            passes=report.passes,
            invocations=report.invocations,
            resolved=report.resolved,
            finals_run=report.finals_run,
            finals_retracted=report.finals_retracted,
            warnings=[WarningDTO.from_warning(item) for item in report.warnings],
        )


class ToolInfoDTO(BaseModel):
    name: str
    tier: str
    origin: str
    summary: str = ""

    @classmethod
    def from_target(cls, target: ToolTarget, *, summary: str = "") -> ToolInfoDTO:
        return cls(
            name=target.name,
            tier=target.tier.name.lower(),
            origin=target.origin,
            summary=summary,
        )


class ToolListDTO(BaseModel):
    tools: List[ToolInfoDTO]
    errors: List[str] = []
