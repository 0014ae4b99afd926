"""
Diagnostic Models

Check results, remediation suggestions and the report a diagnostic run produces.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Dict, Any, List
from enum import Enum

from pbdeploy.utils import utcnow


class DiagnosticStatus(Enum):
    """Outcome of a single check."""

    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"


class RunStatus(Enum):
    """Classification of a whole diagnostic run."""

    HEALTHY = "healthy"
    DEGRADED = "degraded"
    ERROR = "error"


class SuggestionPriority(Enum):
    """Priority of a remediation suggestion, most urgent first."""

    CRITICAL = "critical"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return list(SuggestionPriority).index(self)


@dataclass(frozen=True)
class Diagnostic:
    """One check result. Immutable once emitted."""

    step: str
    status: DiagnosticStatus
    message: str
    detail: Dict[str, Any] = field(default_factory=dict)
    suggestion: Optional[str] = None
    duration_seconds: float = 0.0
    fix: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def is_error(self) -> bool:
        return self.status == DiagnosticStatus.ERROR

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "status": self.status.value,
            "message": self.message,
            "detail": self.detail,
            "suggestion": self.suggestion,
            "duration": round(self.duration_seconds, 3),
            "fix": self.fix,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(frozen=True)
class Suggestion:
    """An actionable remediation derived from one or more diagnostics."""

    step: str
    text: str
    priority: SuggestionPriority = SuggestionPriority.MEDIUM
    category: str = "general"
    automated: bool = False
    command: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step": self.step,
            "text": self.text,
            "priority": self.priority.value,
            "category": self.category,
            "automated": self.automated,
            "command": self.command,
        }


@dataclass
class DiagnosticReport:
    """Ordered diagnostics of one run plus post-processing results."""

    target_id: str
    host: str
    diagnostics: List[Diagnostic] = field(default_factory=list)
    status: RunStatus = RunStatus.HEALTHY
    pattern: str = "healthy"
    suggestions: List[Suggestion] = field(default_factory=list)
    critical_issues: List[str] = field(default_factory=list)
    started_at: datetime = field(default_factory=utcnow)
    finished_at: Optional[datetime] = None

    def add(self, diagnostic: Diagnostic) -> Diagnostic:
        self.diagnostics.append(diagnostic)
        return diagnostic

    def get(self, step: str) -> Optional[Diagnostic]:
        for diagnostic in self.diagnostics:
            if diagnostic.step == step:
                return diagnostic
        return None

    @property
    def steps(self) -> List[str]:
        return [d.step for d in self.diagnostics]

    @property
    def errors(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.status == DiagnosticStatus.ERROR]

    @property
    def warnings(self) -> List[Diagnostic]:
        return [d for d in self.diagnostics if d.status == DiagnosticStatus.WARNING]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "target_id": self.target_id,
            "host": self.host,
            "status": self.status.value,
            "pattern": self.pattern,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
            "suggestions": [s.to_dict() for s in self.suggestions],
            "critical_issues": list(self.critical_issues),
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }

    def __repr__(self) -> str:
        return f"DiagnosticReport(host={self.host}, status={self.status.value}, checks={len(self.diagnostics)})"
