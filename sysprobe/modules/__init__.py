#!/usr/bin/env python3
"""
Module initialization - imports all collectors and provides functions to get collector instances.
"""

from typing import List, Optional

from .base import Collector
from .benchmark import BenchmarkCollector, BenchmarkKind, BenchmarkRunner
from .graphics import GraphicsCollector
from .logs import LogCollector, LogType
from .network import NetworkCollector
from .raid import RaidCollector
from .sources import SystemSources
from .storage import StorageCollector
from .system import SystemCollector


def get_all_collectors(settings=None, sources: Optional[SystemSources] = None) -> List[Collector]:
    """Return one instance of every diagnostic collector, configured from settings."""
    if settings is None:
        from ..config import Settings
        settings = Settings()
    sources = sources or SystemSources()
    collectors = [
        StorageCollector(sources, scan_root=settings.scan_root, large_file_size=settings.large_file_size),
        RaidCollector(sources),
        GraphicsCollector(sources, compositor=settings.compositor, home=settings.home),
        NetworkCollector(sources, ping_host=settings.ping_host, ping_count=settings.ping_count),
        SystemCollector(sources),
        LogCollector(LogType.SYSTEM, hours=settings.log_hours, sources=sources),
    ]
    for collector in collectors:
        collector.enabled = settings.collectors.get(collector.name, False)
    return collectors


def get_benchmark_collectors(settings=None, sources: Optional[SystemSources] = None) -> List[Collector]:
    """Return one benchmark per kind with the configured duration and interval."""
    if settings is None:
        from ..config import Settings
        settings = Settings()
    sources = sources or SystemSources()
    return [
        BenchmarkCollector(kind, settings.benchmark_duration, settings.benchmark_interval, sources=sources,
                           payload_mb=settings.payload_mb, grace=settings.benchmark_grace,
                           directory=settings.benchmark_directory)
        for kind in BenchmarkKind
    ]


__all__ = [
    "BenchmarkCollector", "BenchmarkKind", "BenchmarkRunner", "Collector", "GraphicsCollector",
    "LogCollector", "LogType", "NetworkCollector", "RaidCollector", "StorageCollector",
    "SystemCollector", "get_all_collectors", "get_benchmark_collectors",
]
