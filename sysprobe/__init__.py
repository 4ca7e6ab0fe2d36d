#!/usr/bin/env python3
"""
sysprobe - Linux diagnostic collectors and benchmarks

Runs storage, RAID, graphics, network, system and log collectors plus bounded
benchmarks, and merges their findings into one text, JSON or HTML report.
"""

__version__ = "1.0.0"
