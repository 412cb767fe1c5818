"""
Tests for formal-mode integrity monitoring.
"""

import pytest

from src.core.models import ViolationType
from src.session.integrity import (
    EnvironmentSignal,
    IntegrityMonitor,
    SignalType,
    devtools_suspected,
    normalize_key_combo,
)


@pytest.fixture
def monitor(fixed_wall_clock):
    return IntegrityMonitor(correlation_id="corr-1", now=fixed_wall_clock)


def blur():
    return EnvironmentSignal(SignalType.WINDOW_BLUR)


def focus():
    return EnvironmentSignal(SignalType.WINDOW_FOCUS)


class TestFocus:

    def test_blur_is_a_violation(self, monitor, fixed_wall_clock):
        violation = monitor.observe(blur())

        assert violation.type == ViolationType.FOCUS_LOST
        assert violation.timestamp == fixed_wall_clock()
        assert monitor.violation_count() == 1

    def test_repeated_blur_counts_once(self, monitor):
        monitor.observe(blur())
        assert monitor.observe(blur()) is None
        assert monitor.violation_count() == 1

    def test_blur_after_refocus_counts_again(self, monitor):
        monitor.observe(blur())
        assert monitor.observe(focus()) is None
        monitor.observe(blur())
        assert monitor.violation_count() == 2


class TestKeys:

    @pytest.mark.parametrize(
        "keys,expected",
        [
            ("Shift+Control+I", "ctrl+shift+i"),
            ("Meta+Option+J", "cmd+alt+j"),
            ("F12", "f12"),
        ],
    )
    def test_normalize(self, keys, expected):
        assert normalize_key_combo(keys) == expected

    def test_forbidden_combo(self, monitor):
        violation = monitor.observe(EnvironmentSignal(SignalType.KEY_COMBO, keys="Ctrl+Shift+I"))
        assert violation.type == ViolationType.FORBIDDEN_KEY
        assert violation.detail == "ctrl+shift+i"

    def test_harmless_combo(self, monitor):
        assert monitor.observe(EnvironmentSignal(SignalType.KEY_COMBO, keys="Ctrl+A")) is None


class TestDevtools:

    def test_heuristic(self):
        assert devtools_suspected(1400, 1000, 900, 880) is True
        assert devtools_suspected(1400, 1390, 900, 880) is False
        assert devtools_suspected(None, None, None, None) is False

    def test_open_devtools_counts_once_until_closed(self, monitor):
        docked = EnvironmentSignal(SignalType.WINDOW_RESIZE, outer_width=1400, inner_width=1000)
        closed = EnvironmentSignal(SignalType.WINDOW_RESIZE, outer_width=1400, inner_width=1390)

        assert monitor.observe(docked).type == ViolationType.DEVTOOLS_OPEN
        assert monitor.observe(docked) is None
        monitor.observe(closed)
        assert monitor.observe(docked) is not None
        assert monitor.violation_count() == 2


class TestSummary:

    def test_summary_counts_by_type(self, monitor):
        monitor.observe(blur())
        monitor.observe(EnvironmentSignal(SignalType.CONTEXT_MENU))
        monitor.observe(EnvironmentSignal(SignalType.CLIPBOARD, detail="paste"))
        monitor.observe(EnvironmentSignal(SignalType.CLIPBOARD, detail="copy"))

        assert monitor.summary() == {"focus_lost": 1, "context_menu": 1, "clipboard": 2}

    def test_violations_view_is_read_only(self, monitor):
        monitor.observe(blur())
        assert isinstance(monitor.violations(), tuple)
