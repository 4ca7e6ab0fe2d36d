#!/usr/bin/env python3
"""
Report aggregation and rendering for sysprobe.
"""

import datetime
import html
import json
import logging
import os
import platform
import re
import socket
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional, Sequence, Tuple

from ..modules.base import Collector
from ..modules.capabilities import CapabilityDetector
from ..modules.errors import RunCancelled, ValidationError
from ..modules.models import CollectorResult, Report, Severity
from ..modules.runner import CancellationToken, CommandRunner
from ..modules.sources import SystemSources

logger = logging.getLogger("sysprobe.report")

FORMATS = ("txt", "json", "html")
RULE = "=" * 80

ICONS = {
    "storage": "💾",
    "raid": "🗄️",
    "graphics": "🎮",
    "network": "🌐",
    "system": "⚙️",
    "logs": "📜",
    "benchmark_storage": "⚡",
    "benchmark_graphics": "⚡",
    "benchmark_system": "⚡",
}
ASCII_ICONS = {
    "storage": "[D]",
    "raid": "[R]",
    "graphics": "[G]",
    "network": "[N]",
    "system": "[S]",
    "logs": "[L]",
    "benchmark_storage": "[B]",
    "benchmark_graphics": "[B]",
    "benchmark_system": "[B]",
}

SECTION_PATTERN = re.compile(r"^=== (?:\S+ )?([A-Za-z0-9_.-]+) ===$")
FINDING_PATTERN = re.compile(r"^\[(info|warning|critical)\] (.*)$")
SKIPPED_PATTERN = re.compile(r"^\(skipped: (.*)\)$")


def get_hostname() -> str:
    """Get the system hostname."""
    try:
        return socket.gethostname() or "unknown-host"
    except OSError:
        return "unknown-host"


def system_overview(sources: SystemSources) -> Dict[str, str]:
    """Get basic system information for the report header."""
    info = {}
    for line in sources.read_lines("/etc/os-release") or []:
        key, _, value = line.partition("=")
        if key == "PRETTY_NAME":
            info["OS"] = value.strip().strip('"')
            break
    info["Kernel"] = platform.release()

    uptime_seconds = max(0.0, time.time() - sources.boot_time())
    days, remainder = divmod(uptime_seconds, 86400)
    hours, remainder = divmod(remainder, 3600)
    minutes, seconds = divmod(remainder, 60)
    info["Uptime"] = f"{int(days)}d {int(hours)}h {int(minutes)}m {int(seconds)}s"

    info["CPU Count"] = str(sources.cpu_count())
    for line in sources.read_lines("/proc/cpuinfo", filter_func=lambda l: l.startswith("model name")) or []:
        info["CPU Model"] = line.split(":", 1)[1].strip()
        break
    info["Memory"] = f"{sources.memory_total() / 1024 ** 3:.2f} GB"
    return info


class Aggregator:
    """Runs collectors and merges their results into one Report."""

    def __init__(self, runner: CommandRunner, detector: CapabilityDetector, jobs: int = 1,
                 token: Optional[CancellationToken] = None, overview: bool = True):
        if jobs < 1:
            raise ValidationError(f"jobs must be at least 1, got {jobs}")
        self.runner = runner
        self.detector = detector
        self.jobs = jobs
        self.token = token or runner.token
        self.overview = overview

    def aggregate(self, collectors: Sequence[Collector]) -> Report:
        """Run every collector and return the Report, results in input order."""
        report = Report(timestamp=datetime.datetime.now(), hostname=get_hostname())
        if self.overview:
            try:
                report.overview = system_overview(self.detector.sources)
            except OSError as e:
                logger.error("Error getting system info: %s", e)

        if self.jobs > 1 and len(collectors) > 1:
            with ThreadPoolExecutor(max_workers=self.jobs, thread_name_prefix="sysprobe") as pool:
                report.results = list(pool.map(self._run_one, collectors))
        else:
            report.results = [self._run_one(collector) for collector in collectors]

        counts = report.counts()
        logger.info("Report complete: %d critical, %d warning, %d info",
                    counts["critical"], counts["warning"], counts["info"])
        return report

    def _run_one(self, collector: Collector) -> CollectorResult:
        if self.token.cancelled:
            result = CollectorResult(collector.name)
            result.skip("run cancelled")
            return result

        logger.info("Running collector: %s", collector.name)
        try:
            return collector.run(self.runner, self.detector)
        except ValidationError:
            raise
        except RunCancelled:
            result = CollectorResult(collector.name)
            result.skip("run cancelled")
            return result
        except Exception as e:
            logger.error("Error running collector %s: %s", collector.name, e, exc_info=True)
            result = CollectorResult(collector.name)
            result.critical(f"collector failed: {type(e).__name__}: {e}")
            return result


class ReportRenderer:
    """Renders a Report as text, JSON or HTML."""

    def __init__(self, ascii_only: bool = False, include_evidence: bool = True):
        self.ascii_only = ascii_only
        self.include_evidence = include_evidence

    def icon(self, name: str) -> str:
        if self.ascii_only:
            return ASCII_ICONS.get(name, "*")
        return ICONS.get(name, "•")

    def render(self, report: Report, fmt: str = "txt") -> str:
        if fmt == "txt":
            return self.render_text(report)
        if fmt == "json":
            return self.render_json(report)
        if fmt == "html":
            return self.render_html(report)
        raise ValidationError(f"Unknown output format {fmt!r}. Available formats: {', '.join(FORMATS)}")

    def _header(self, report: Report) -> List[str]:
        counts = report.counts()
        summary = f"{counts['critical']} critical, {counts['warning']} warning, {counts['info']} info"
        if self.ascii_only:
            title, generated, host, totals = "SYSPROBE DIAGNOSTIC REPORT", "Generated:", "Hostname:", "Summary:"
        else:
            title, generated, host, totals = ("🔍 SYSPROBE DIAGNOSTIC REPORT 🔍", "📅 Generated:",
                                              "💻 Hostname:", "📊 Summary:")
        return [
            RULE,
            title,
            f"{generated} {report.timestamp.strftime('%Y-%m-%d %H:%M:%S')}",
            f"{host} {report.hostname}",
            f"{totals} {summary}",
            RULE,
            "",
        ]

    def render_text(self, report: Report) -> str:
        lines = self._header(report)

        if report.overview:
            lines.append("SYSTEM OVERVIEW" if self.ascii_only else "📋 SYSTEM OVERVIEW")
            lines.append("-" * 80)
            for key, value in report.overview.items():
                lines.append(f"{key}: {value}")
            lines.append("")

        for result in report.results:
            lines.append(f"=== {self.icon(result.collector)} {result.collector} ===")
            if not result.findings and not result.skipped:
                lines.append("No results collected for this collector.")
            for finding in result.findings:
                message = " ".join(finding.message.splitlines())
                lines.append(f"[{finding.severity.value}] {message}")
                if self.include_evidence and finding.evidence:
                    lines.extend(f"    {line}" for line in finding.evidence.splitlines())
            for reason in result.skipped:
                lines.append(f"(skipped: {reason})")
            lines.append("")

        return "\n".join(lines)

    def render_json(self, report: Report) -> str:
        data = report.to_dict()
        if not self.include_evidence:
            for result in data["results"]:
                for finding in result["findings"]:
                    finding.pop("evidence", None)
        return json.dumps(data, indent=2, ensure_ascii=False)

    def render_html(self, report: Report) -> str:
        counts = report.counts()
        content = []
        if report.overview:
            content.append('<div class="section"><h2>System Overview</h2><table>')
            for key, value in report.overview.items():
                content.append(f"<tr><th>{html.escape(key)}</th><td>{html.escape(value)}</td></tr>")
            content.append("</table></div>")

        for result in report.results:
            content.append('<div class="section">')
            content.append(f"<h2>{html.escape(self.icon(result.collector))} {html.escape(result.collector)}</h2>")
            content.append("<ul>")
            for finding in result.findings:
                item = (f'<li class="{finding.severity.value}"><span class="severity">'
                        f"[{finding.severity.value}]</span> {html.escape(finding.message)}")
                if self.include_evidence and finding.evidence:
                    item += f"<pre>{html.escape(finding.evidence)}</pre>"
                content.append(item + "</li>")
            for reason in result.skipped:
                content.append(f'<li class="skipped">(skipped: {html.escape(reason)})</li>')
            content.append("</ul></div>")

        return HTML_TEMPLATE.format(
            hostname=html.escape(report.hostname),
            timestamp=report.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            critical=counts["critical"],
            warning=counts["warning"],
            info=counts["info"],
            content="\n".join(content),
        )

    def save(self, report: Report, fmt: str = "txt", filename: Optional[str] = None,
             directory: Optional[str] = None) -> str:
        """Render the report into a file and return its path."""
        if filename is None:
            stamp = report.timestamp.strftime("%Y%m%d_%H%M%S")
            filename = os.path.join(directory or ".", f"sysprobe_{report.hostname}_{stamp}.{fmt}")
        os.makedirs(os.path.dirname(os.path.abspath(filename)), exist_ok=True)
        with open(filename, "w") as f:
            f.write(self.render(report, fmt))
        logger.info("Diagnostic report saved to: %s", filename)
        return filename


HTML_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <title>sysprobe report - {hostname}</title>
    <style>
        body {{ font-family: Arial, sans-serif; margin: 20px; }}
        h1 {{ color: #2c3e50; }}
        h2 {{ color: #3498db; margin-top: 30px; border-bottom: 1px solid #ddd; }}
        pre {{ background-color: #f5f5f5; padding: 10px; border-radius: 5px; overflow-x: auto; }}
        ul {{ list-style: none; padding-left: 0; }}
        li {{ margin: 4px 0; }}
        .timestamp {{ color: #7f8c8d; font-style: italic; }}
        .section {{ margin-bottom: 30px; }}
        .critical .severity {{ color: #c0392b; font-weight: bold; }}
        .warning .severity {{ color: #d35400; font-weight: bold; }}
        .info .severity {{ color: #2980b9; }}
        .skipped {{ color: #95a5a6; }}
    </style>
</head>
<body>
    <h1>sysprobe Diagnostic Report: {hostname}</h1>
    <div class="timestamp">Generated: {timestamp}</div>
    <p>{critical} critical, {warning} warning, {info} info</p>

    {content}
</body>
</html>
"""


def parse_text_report(text: str) -> Dict[str, Tuple[List[Tuple[Severity, str]], List[str]]]:
    """
    Parse a text report back into its structure.

    Returns:
        Mapping of collector name to (findings, skipped) where findings are
        (severity, message) pairs in report order
    """
    sections: Dict[str, Tuple[List[Tuple[Severity, str]], List[str]]] = {}
    current = None
    for line in text.splitlines():
        section = SECTION_PATTERN.match(line)
        if section:
            current = sections.setdefault(section.group(1), ([], []))
            continue
        if current is None or line.startswith("    "):
            continue
        finding = FINDING_PATTERN.match(line)
        if finding:
            current[0].append((Severity(finding.group(1)), finding.group(2)))
            continue
        skipped = SKIPPED_PATTERN.match(line)
        if skipped:
            current[1].append(skipped.group(1))
    return sections
