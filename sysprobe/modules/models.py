#!/usr/bin/env python3
"""
Data model shared by collectors, benchmarks and the report renderer.
"""

import datetime
import statistics
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence


class Severity(str, Enum):
    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


@dataclass(frozen=True)
class Finding:
    """One diagnostic observation produced by a collector."""

    category: str
    severity: Severity
    message: str
    evidence: Optional[str] = None
    check: Optional[str] = None
    metrics: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "severity": self.severity.value,
            "message": self.message,
            "check": self.check,
        }
        if self.evidence:
            data["evidence"] = self.evidence
        if self.metrics:
            data["metrics"] = dict(self.metrics)
        return data


@dataclass(frozen=True)
class BenchmarkSample:
    offset: float
    metric: str
    value: float


def summarize(values: Sequence[float]) -> Dict[str, float]:
    """Return min/max/mean/count for a list of numbers (empty dict if none)."""
    if not values:
        return {}
    return {
        "min": min(values),
        "max": max(values),
        "mean": round(statistics.mean(values), 2),
        "count": len(values),
    }


@dataclass
class CollectorResult:
    """Findings, skipped checks and samples gathered by one collector."""

    collector: str
    findings: List[Finding] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    samples: List[BenchmarkSample] = field(default_factory=list)
    duration: float = 0.0

    def add(self, severity: Severity, message: str, evidence: Optional[str] = None,
            check: Optional[str] = None, metrics: Optional[Dict[str, float]] = None) -> Finding:
        # Category always follows the owning collector
        finding = Finding(
            category=self.collector,
            severity=Severity(severity),
            message=message,
            evidence=evidence or None,
            check=check,
            metrics=dict(metrics or {}),
        )
        self.findings.append(finding)
        return finding

    def info(self, message: str, **kwargs) -> Finding:
        return self.add(Severity.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs) -> Finding:
        return self.add(Severity.WARNING, message, **kwargs)

    def critical(self, message: str, **kwargs) -> Finding:
        return self.add(Severity.CRITICAL, message, **kwargs)

    def skip(self, reason: str):
        self.skipped.append(reason)

    def sample(self, offset: float, metric: str, value: float) -> BenchmarkSample:
        sample = BenchmarkSample(offset=round(offset, 3), metric=metric, value=float(value))
        self.samples.append(sample)
        return sample

    def samples_for(self, metric: str) -> List[BenchmarkSample]:
        return [s for s in self.samples if s.metric == metric]

    @property
    def worst_severity(self) -> Optional[Severity]:
        order = [Severity.INFO, Severity.WARNING, Severity.CRITICAL]
        worst = None
        for finding in self.findings:
            if worst is None or order.index(finding.severity) > order.index(worst):
                worst = finding.severity
        return worst

    def to_dict(self) -> Dict[str, Any]:
        return {
            "collector": self.collector,
            "duration": round(self.duration, 3),
            "findings": [f.to_dict() for f in self.findings],
            "skipped": list(self.skipped),
            "samples": [
                {"offset": s.offset, "metric": s.metric, "value": s.value}
                for s in self.samples
            ],
        }


@dataclass
class Report:
    """Aggregated output of one diagnostic run."""

    timestamp: datetime.datetime
    hostname: str = "unknown-host"
    results: List[CollectorResult] = field(default_factory=list)
    overview: Dict[str, str] = field(default_factory=dict)

    def result_for(self, collector: str) -> Optional[CollectorResult]:
        for result in self.results:
            if result.collector == collector:
                return result
        return None

    def counts(self) -> Dict[str, int]:
        counts = {severity.value: 0 for severity in Severity}
        for result in self.results:
            for finding in result.findings:
                counts[finding.severity.value] += 1
        return counts

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "hostname": self.hostname,
            "overview": dict(self.overview),
            "summary": self.counts(),
            "results": [r.to_dict() for r in self.results],
        }
