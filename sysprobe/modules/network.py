#!/usr/bin/env python3
"""
Network related diagnostic collectors.
"""

import re
from typing import List, Optional

from .base import Collector, evidence
from .errors import ParseError
from .models import CollectorResult
from .sources import SystemSources

SYSLOG_PATH = "/var/log/syslog"
INTERFACE_PATTERN = re.compile(r"^\d+:\s+([^:@]+)(?:@\S+)?:\s+<([^>]*)>.*?state (\S+)")


class NetworkCollector(Collector):
    """Interfaces, routing, name resolution and connections."""

    requires = ("ip", "ping", "ss", "ethtool", "iftop")

    def __init__(self, sources: Optional[SystemSources] = None, ping_host: str = "google.com",
                 ping_count: int = 3):
        super().__init__("network", "Network Configuration", sources)
        self.ping_host = ping_host
        self.ping_count = ping_count
        self.interfaces: List[str] = []
        self.subsections = {
            "interfaces": True,
            "link_status": True,
            "routing": True,
            "dns": True,
            "connections": True,
            "usage": True,
            "connection_attempts": True,
        }

    def collect(self, result: CollectorResult):
        self.interfaces = []
        self.check(result, "interfaces", self._interfaces, requires=("ip",))
        self.check(result, "link_status", self._link_status, requires=("ethtool",))
        self.check(result, "routing", self._routing, requires=("ip",))
        self.check(result, "dns", self._dns, requires=("ping",))
        self.check(result, "connections", self._connections, requires=("ss",))
        self.check(result, "usage", self._usage, requires=("iftop",))
        self.check(result, "connection_attempts", self._connection_attempts, requires=("syslog",))

    def _interfaces(self, result: CollectorResult):
        res = self.execute(["ip", "addr"])
        found = 0
        for line in res.stdout:
            match = INTERFACE_PATTERN.match(line)
            if not match:
                continue
            found += 1
            name, flags, state = match.groups()
            if name == "lo":
                continue
            self.interfaces.append(name)
            if "UP" in flags.split(",") and state in ("UP", "UNKNOWN"):
                result.info(f"Interface {name} is up", check="interfaces")
            elif "NO-CARRIER" in flags:
                result.warning(f"Interface {name} has no carrier", check="interfaces")
            else:
                result.warning(f"Interface {name} is {state.lower()}", check="interfaces")
        if not found:
            raise ParseError("ip addr listed no interfaces", evidence(res.stdout))

    def _link_status(self, result: CollectorResult):
        if not self.interfaces:
            result.skip("link_status: no interfaces to inspect")
            return
        for iface in self.interfaces:
            res = self.execute(["ethtool", iface])
            info = {}
            for line in res.stdout:
                key, _, value = line.strip().partition(":")
                info[key] = value.strip()
            if res.exit_code != 0 or "Link detected" not in info:
                continue
            speed = info.get("Speed", "unknown speed")
            duplex = info.get("Duplex", "unknown duplex")
            if info["Link detected"] == "yes":
                result.info(f"{iface} link detected: {speed}, {duplex} duplex", check="link_status")
            else:
                result.warning(f"{iface}: no link detected", check="link_status")

    def _routing(self, result: CollectorResult):
        res = self.execute(["ip", "route"])
        defaults = [line for line in res.stdout if line.startswith("default")]
        if defaults:
            result.info(f"Default route: {defaults[0]}", evidence=evidence(res.stdout), check="routing")
            if len(defaults) > 1:
                result.warning(f"{len(defaults)} default routes configured", evidence=evidence(defaults),
                               check="routing")
        else:
            result.warning("No default route configured", evidence=evidence(res.stdout), check="routing")

    def _dns(self, result: CollectorResult):
        res = self.execute(["ping", "-c", str(self.ping_count), self.ping_host],
                           timeout=self.ping_count * 2 + 5)
        if res.exit_code != 0:
            lines = res.stdout + res.stderr.splitlines()
            result.warning(f"DNS resolution or ping to {self.ping_host} failed", evidence=evidence(lines),
                           check="dns")
            return
        summary = next((line for line in res.stdout if "packet loss" in line), "")
        rtt = next((line for line in res.stdout if line.startswith("rtt") or line.startswith("round-trip")), "")
        loss = re.search(r"([\d.]+)% packet loss", summary)
        metrics = {"packet_loss_percent": float(loss.group(1))} if loss else {}
        if loss and float(loss.group(1)) > 0:
            result.warning(f"Ping to {self.ping_host}: {summary.strip()}", evidence=rtt or None, check="dns",
                           metrics=metrics)
        else:
            result.info(f"Ping to {self.ping_host} succeeded", evidence=rtt or None, check="dns",
                        metrics=metrics)

    def _connections(self, result: CollectorResult):
        lines = self.output_lines(["ss", "-tuln"])
        listening = [line for line in lines[1:] if line.strip()]
        result.info(f"{len(listening)} listening socket(s)", evidence=evidence(lines), check="connections")

    def _usage(self, result: CollectorResult):
        res = self.execute(["iftop", "-t", "-s", "5"], timeout=15, allow_timeout=True)
        totals = [line.strip() for line in res.stdout
                  if line.strip().startswith(("Total send rate", "Total receive rate", "Peak rate"))]
        if not totals:
            raise ParseError("iftop reported no rates (root required?)",
                             evidence(res.stdout + res.stderr.splitlines()))
        result.info("Current network usage sampled", evidence=evidence(totals), check="usage")

    def _connection_attempts(self, result: CollectorResult):
        lines = self.sources.read_lines(SYSLOG_PATH, filter_func=lambda line: "connect" in line,
                                        trim_lines=10)
        if lines is None:
            result.skip(f"connection_attempts: {SYSLOG_PATH} not readable")
            return
        result.info(f"{len(lines)} recent connection log entries", evidence=evidence(lines),
                    check="connection_attempts")
