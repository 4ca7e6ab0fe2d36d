#!/usr/bin/env python3
"""
Curses selection menu, export menu and report viewer for sysprobe.
"""

import curses
import locale
import logging
import os
import tempfile
from typing import List, Optional, Tuple, Union

from ..modules.base import Collector
from ..modules.models import Report
from .report import ASCII_ICONS, ICONS, ReportRenderer

logger = logging.getLogger("sysprobe.tui")

DISPLAY_ONLY = "__DISPLAY_ONLY__"
EXPORT_CANCELLED = "Export cancelled"

# (collector index, indent level, collector or subsection name)
VisibleItem = Tuple[int, int, Union[Collector, str]]


def check_unicode_support() -> bool:
    """Check if the terminal supports unicode characters."""
    return locale.getpreferredencoding(False).lower() in ("utf-8", "utf8")


class SelectionMenu:
    """Checkbox tree of collectors and their sub-checks."""

    def __init__(self, collectors: List[Collector], ascii_only: bool = False):
        self.collectors = collectors
        self.current_pos = 0
        self.status_message = ""
        self.run_selected = False
        self.quit = False
        # Start with all collectors collapsed except the enabled ones
        self.expanded = {i for i, c in enumerate(collectors) if c.enabled}
        self.use_unicode = not ascii_only and check_unicode_support()

    def icon(self, name: str) -> str:
        return ICONS.get(name, "*") if self.use_unicode else ASCII_ICONS.get(name, "*")

    def visible_items(self) -> List[VisibleItem]:
        items = []
        for i, collector in enumerate(self.collectors):
            items.append((i, 0, collector))
            if i in self.expanded:
                for subsection in collector.subsections:
                    items.append((i, 1, subsection))
        return items

    def selected(self) -> List[Collector]:
        return [c for c in self.collectors if c.enabled]

    def move(self, delta: int):
        self.current_pos = max(0, min(len(self.visible_items()) - 1, self.current_pos + delta))

    def toggle_current_item(self):
        """Toggle the checkbox under the cursor."""
        index, _, item = self.visible_items()[self.current_pos]
        collector = self.collectors[index]
        if isinstance(item, str):
            collector.subsections[item] = not collector.subsections[item]
            state = "enabled" if collector.subsections[item] else "disabled"
            self.status_message = f"Sub-check '{item}' {state}"
        else:
            collector.enabled = not collector.enabled
            self.status_message = f"Collector '{collector.name}' {'enabled' if collector.enabled else 'disabled'}"

    def set_expanded(self, expand: Optional[bool] = None):
        """Expand, collapse or (with None) toggle the collector under the cursor."""
        index, level, _ = self.visible_items()[self.current_pos]
        if level != 0:
            return
        expand = index not in self.expanded if expand is None else expand
        name = self.collectors[index].name
        if expand and index not in self.expanded:
            self.expanded.add(index)
            self.status_message = f"Collector '{name}' expanded"
        elif not expand and index in self.expanded:
            self.expanded.remove(index)
            self.status_message = f"Collector '{name}' collapsed"

    def set_all(self, enabled: bool):
        for collector in self.collectors:
            collector.enabled = enabled
            collector.set_all_subsections(enabled)
        self.status_message = f"All collectors and sub-checks {'enabled' if enabled else 'disabled'}"

    def handle_key(self, key: int):
        """Apply one key press from the main menu."""
        if key in (ord("q"), ord("Q")):
            self.quit = True
        elif key in (ord("r"), ord("R")):
            if self.selected():
                self.run_selected = True
            else:
                self.status_message = "Error: No collectors selected. Please select at least one."
        elif key in (curses.KEY_UP, ord("k"), ord("K")):
            self.move(-1)
        elif key in (curses.KEY_DOWN, ord("j"), ord("J")):
            self.move(1)
        elif key == ord(" "):
            self.toggle_current_item()
        elif key in (10, 13):
            self.set_expanded()
        elif key == curses.KEY_RIGHT:
            self.set_expanded(True)
        elif key == curses.KEY_LEFT:
            self.set_expanded(False)
        elif key in (ord("a"), ord("A")):
            self.set_all(True)
        elif key in (ord("n"), ord("N")):
            self.set_all(False)

    # -- drawing ---------------------------------------------------------

    def init_colors(self):
        curses.start_color()
        curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)  # Header
        curses.init_pair(2, curses.COLOR_YELLOW, curses.COLOR_BLACK)  # Section headers
        curses.init_pair(3, curses.COLOR_GREEN, curses.COLOR_BLACK)  # Enabled items
        curses.init_pair(4, curses.COLOR_RED, curses.COLOR_BLACK)  # Disabled items
        curses.init_pair(5, curses.COLOR_CYAN, curses.COLOR_BLACK)  # Options

    def draw_header(self, stdscr, title: str):
        _, w = stdscr.getmaxyx()
        stdscr.attron(curses.color_pair(1) | curses.A_BOLD)
        stdscr.addstr(1, max(0, (w - len(title)) // 2), title[:w - 1])
        stdscr.attroff(curses.color_pair(1) | curses.A_BOLD)

    def draw_main_menu(self, stdscr):
        """Draw the collector tree."""
        stdscr.clear()
        h, w = stdscr.getmaxyx()
        self.draw_header(stdscr, " 🔍 sysprobe 🔍 " if self.use_unicode else " sysprobe ")

        arrows = "↑/↓/j/k" if self.use_unicode else "Up/Down/j/k"
        help_text = f"{arrows}: Navigate | Space: Check/Uncheck | Enter: Expand/Collapse | a/n: All/None | r: Run | q: Quit"
        help_lines = [help_text[i:i + w - 4] for i in range(0, len(help_text), w - 4)]
        for i, line in enumerate(help_lines):
            stdscr.addstr(3 + i, 2, line)

        if self.use_unicode:
            checkbox_on, checkbox_off, expanded, collapsed = "✅", "❌", "▼", "▶"
        else:
            checkbox_on, checkbox_off, expanded, collapsed = "[X]", "[ ]", "[-]", "[+]"

        list_start_y = 5 + len(help_lines)
        max_visible = max(1, h - list_start_y - 3)
        items = self.visible_items()
        start = max(0, self.current_pos - max_visible + 1)

        for row, (index, level, item) in enumerate(items[start:start + max_visible]):
            y = list_start_y + row
            collector = self.collectors[index]
            if start + row == self.current_pos:
                stdscr.attron(curses.A_REVERSE)
            if isinstance(item, str):
                enabled = collector.subsections[item]
                text = f"{checkbox_on if enabled else checkbox_off} {item.replace('_', ' ').title()}"
                attr = curses.color_pair(3 if enabled else 4)
                x = 2 + level * 4
            else:
                enabled = collector.enabled
                indicator = (expanded if index in self.expanded else collapsed) if collector.subsections else "   "
                text = (f"{indicator} {checkbox_on if enabled else checkbox_off} {self.icon(collector.name)} "
                        f"{collector.name} - {collector.description}")
                attr = curses.color_pair(3 if enabled else 4) | curses.A_BOLD
                x = 2
            stdscr.attron(attr)
            stdscr.addstr(y, x, text[:w - x - 1])
            stdscr.attroff(attr)
            if start + row == self.current_pos:
                stdscr.attroff(curses.A_REVERSE)

        if self.status_message:
            stdscr.addstr(h - 2, 2, self.status_message[:w - 3], curses.A_BOLD)
        stdscr.addstr(h - 1, 2, "Press 'q' to quit, 'r' to run diagnostics"[:w - 3], curses.A_BOLD)
        stdscr.refresh()

    def run(self) -> List[Collector]:
        """Show the menu and return the selected collectors (empty if the user quit)."""
        return curses.wrapper(self._run_ui)

    def _run_ui(self, stdscr) -> List[Collector]:
        curses.curs_set(0)
        stdscr.timeout(-1)
        self.init_colors()
        while not self.run_selected and not self.quit:
            self.draw_main_menu(stdscr)
            self.handle_key(stdscr.getch())
        return [] if self.quit else self.selected()


class ExportMenu:
    """Export options offered after a run."""

    OPTIONS = [
        "1. Export to text file (default location)",
        "2. Export to text file (custom location)",
        "3. Export to JSON format",
        "4. Export to HTML format",
        "5. Display on screen only",
    ]

    def __init__(self, renderer: ReportRenderer, directory: Optional[str] = None):
        self.renderer = renderer
        self.directory = directory or tempfile.gettempdir()

    def handle_choice(self, choice: str, report: Report, filename: Optional[str] = None) -> str:
        """Export the report for a menu choice and return a status message."""
        formats = {"1": "txt", "2": "txt", "3": "json", "4": "html"}
        if choice == "5":
            return DISPLAY_ONLY
        if choice not in formats:
            return "Invalid choice"
        if choice == "2" and not filename:
            return EXPORT_CANCELLED
        fmt = formats[choice]
        try:
            path = self.renderer.save(report, fmt, filename=filename, directory=self.directory)
        except OSError as e:
            logger.error("Failed to export report: %s", e)
            return f"Failed to export {fmt.upper()} report: {e}"
        return f"{fmt.upper()} report exported to {path}"

    def draw(self, stdscr):
        stdscr.clear()
        h, _ = stdscr.getmaxyx()
        curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)
        curses.init_pair(5, curses.COLOR_CYAN, curses.COLOR_BLACK)
        stdscr.addstr(1, 4, " Export Options ", curses.color_pair(1) | curses.A_BOLD)
        for i, option in enumerate(self.OPTIONS):
            stdscr.addstr(3 + i, 4, option, curses.color_pair(5))
        stdscr.addstr(4 + len(self.OPTIONS), 4, "Enter the number of your choice (1-5), or press 'q' to go back:",
                      curses.A_BOLD)
        stdscr.addstr(h - 1, 2, "Press 'q' to go back without exporting")
        stdscr.refresh()

    def show(self, stdscr, report: Report) -> Optional[str]:
        """Show the menu, perform the export and return a status message."""
        self.draw(stdscr)
        choice = stdscr.getkey()
        if choice.lower() == "q":
            return EXPORT_CANCELLED

        filename = None
        if choice == "2":
            curses.echo()
            curses.curs_set(1)
            stdscr.addstr(6 + len(self.OPTIONS), 4, "Enter file path: ")
            filename = stdscr.getstr(6 + len(self.OPTIONS), 21, 200).decode("utf-8").strip()
            curses.noecho()
            curses.curs_set(0)

        result = self.handle_choice(choice, report, filename=filename and os.path.expanduser(filename))
        if result == DISPLAY_ONLY:
            display_report(stdscr, self.renderer.render(report, "txt"))
            return None
        return result


def display_report(stdscr, text: str):
    """Display a text report with scrolling."""
    stdscr.clear()
    curses.init_pair(1, curses.COLOR_WHITE, curses.COLOR_BLUE)
    curses.init_pair(2, curses.COLOR_YELLOW, curses.COLOR_BLACK)
    curses.init_pair(4, curses.COLOR_RED, curses.COLOR_BLACK)
    h, w = stdscr.getmaxyx()
    lines = text.splitlines()
    page = max(1, h - 2)
    top = 0

    header = " Report Viewer - Use Up/Down/PgUp/PgDn to scroll, 'q' to exit "
    while True:
        stdscr.erase()
        stdscr.addstr(0, 0, (header + " " * w)[:w - 1], curses.color_pair(1) | curses.A_BOLD)
        for row, line in enumerate(lines[top:top + page]):
            line = line[:w - 1]
            if line.startswith("=== "):
                attr = curses.color_pair(2) | curses.A_BOLD
            elif line.startswith("[critical]"):
                attr = curses.color_pair(4) | curses.A_BOLD
            else:
                attr = curses.A_NORMAL
            try:
                stdscr.addstr(row + 1, 0, line, attr)
            except curses.error:
                # Writing to the bottom right corner raises
                pass
        footer = f" Line {top + 1}-{min(top + page, len(lines))} of {len(lines)} "
        try:
            stdscr.addstr(h - 1, 0, footer[:w - 1])
        except curses.error:
            pass
        stdscr.refresh()

        key = stdscr.getch()
        last_top = max(0, len(lines) - page)
        if key in (ord("q"), ord("Q"), 27):
            break
        elif key in (curses.KEY_UP, ord("k"), ord("K")):
            top = max(0, top - 1)
        elif key in (curses.KEY_DOWN, ord("j"), ord("J")):
            top = min(last_top, top + 1)
        elif key == curses.KEY_PPAGE:
            top = max(0, top - page)
        elif key == curses.KEY_NPAGE:
            top = min(last_top, top + page)
        elif key == curses.KEY_HOME:
            top = 0
        elif key == curses.KEY_END:
            top = last_top
