"""Menu state handling, without a terminal."""

import curses
import datetime

from conftest import FakeSources

from sysprobe.config import Settings
from sysprobe.modules import get_all_collectors
from sysprobe.modules.models import CollectorResult, Report
from sysprobe.ui.report import ReportRenderer
from sysprobe.ui.tui import DISPLAY_ONLY, EXPORT_CANCELLED, ExportMenu, SelectionMenu


def menu(**enabled) -> SelectionMenu:
    collectors = get_all_collectors(Settings(collectors=enabled), FakeSources())
    return SelectionMenu(collectors, ascii_only=True)


def report() -> Report:
    result = CollectorResult("network")
    result.warning("No default route configured")
    return Report(timestamp=datetime.datetime(2026, 10, 19, 8, 0), hostname="test-host", results=[result])


def test_enabled_collectors_start_expanded() -> None:
    m = menu(storage=True)

    items = m.visible_items()

    assert items[0][2].name == "storage"
    assert items[1] == (0, 1, "block_devices")
    assert [item.name for _, level, item in items if level == 0] == [
        "storage", "raid", "graphics", "network", "system", "logs"]


def test_toggle_collector_and_subsection() -> None:
    m = menu()

    m.handle_key(ord(" "))
    assert [c.name for c in m.selected()] == ["storage"]

    m.handle_key(curses.KEY_RIGHT)
    m.handle_key(ord("j"))
    m.handle_key(ord(" "))
    assert m.collectors[0].subsections["block_devices"] is False
    assert m.status_message == "Sub-check 'block_devices' disabled"

    m.handle_key(ord("k"))
    m.handle_key(curses.KEY_LEFT)
    assert 0 not in m.expanded


def test_run_requires_a_selection() -> None:
    m = menu()

    m.handle_key(ord("r"))
    assert not m.run_selected
    assert m.status_message.startswith("Error: No collectors selected")

    m.handle_key(ord("a"))
    m.handle_key(ord("r"))
    assert m.run_selected
    assert len(m.selected()) == 6
    assert all(all(c.subsections.values()) for c in m.selected())


def test_cursor_stays_in_range() -> None:
    m = menu()

    m.handle_key(curses.KEY_UP)
    assert m.current_pos == 0
    for _ in range(20):
        m.handle_key(curses.KEY_DOWN)
    assert m.current_pos == len(m.visible_items()) - 1


def test_quit() -> None:
    m = menu(system=True)

    m.handle_key(ord("q"))

    assert m.quit


def test_export_choices(tmp_path) -> None:
    export = ExportMenu(ReportRenderer(), str(tmp_path))

    message = export.handle_choice("3", report())

    path = tmp_path / "sysprobe_test-host_20261019_080000.json"
    assert message == f"JSON report exported to {path}"
    assert path.exists()
    assert export.handle_choice("5", report()) == DISPLAY_ONLY
    assert export.handle_choice("9", report()) == "Invalid choice"
    assert export.handle_choice("2", report()) == EXPORT_CANCELLED


def test_export_to_custom_location(tmp_path) -> None:
    target = tmp_path / "nested" / "report.txt"

    message = ExportMenu(ReportRenderer()).handle_choice("2", report(), filename=str(target))

    assert message == f"TXT report exported to {target}"
    assert "[warning] No default route configured" in target.read_text()
