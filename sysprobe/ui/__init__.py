#!/usr/bin/env python3
"""
UI module initialization for sysprobe.
"""

from .report import Aggregator, ReportRenderer, parse_text_report
from .tui import ExportMenu, SelectionMenu
