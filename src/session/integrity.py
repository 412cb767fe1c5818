"""
Integrity Monitor for formal exam sessions.

Passive observer: environment signals become append-only Violation records.
It never pauses the clock and never blocks input; violations are audit
metadata summarized at submission time.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum

from loguru import logger

from src.core.models import Violation, ViolationType


class SignalType(str, Enum):
    """Environment signals a client can report."""

    WINDOW_BLUR = "window_blur"
    WINDOW_FOCUS = "window_focus"
    WINDOW_RESIZE = "window_resize"  # Carries outer/inner sizes for the devtools heuristic
    DEVTOOLS = "devtools"  # Client-side detection already concluded devtools are open
    KEY_COMBO = "key_combo"
    CONTEXT_MENU = "context_menu"
    CLIPBOARD = "clipboard"


@dataclass(frozen=True)
class EnvironmentSignal:
    """One observation from the client environment."""

    type: SignalType
    keys: str | None = None  # e.g. "Ctrl+Shift+I"
    outer_width: int | None = None
    inner_width: int | None = None
    outer_height: int | None = None
    inner_height: int | None = None
    detail: str | None = None


MODIFIER_ORDER = ("ctrl", "cmd", "alt", "shift")
MODIFIER_ALIASES = {
    "control": "ctrl",
    "meta": "cmd",
    "command": "cmd",
    "option": "alt",
}

# Devtools, view-source, print, save, copy/paste and screenshots
FORBIDDEN_KEY_COMBOS = frozenset({
    "f12",
    "ctrl+shift+i",
    "ctrl+shift+j",
    "ctrl+shift+c",
    "ctrl+u",
    "ctrl+s",
    "ctrl+p",
    "ctrl+c",
    "ctrl+v",
    "ctrl+x",
    "cmd+alt+i",
    "cmd+alt+j",
    "cmd+alt+c",
    "cmd+alt+u",
    "cmd+s",
    "cmd+p",
    "cmd+c",
    "cmd+v",
    "cmd+x",
    "printscreen",
    "cmd+shift+3",
    "cmd+shift+4",
})


def normalize_key_combo(keys: str) -> str:
    """
    Canonical form of a key combination.

    "Shift+Control+I" and "ctrl+shift+i" both become "ctrl+shift+i".
    """
    parts = [p.strip().lower() for p in keys.replace(" ", "").split("+") if p.strip()]
    parts = [MODIFIER_ALIASES.get(p, p) for p in parts]
    modifiers = [m for m in MODIFIER_ORDER if m in parts]
    others = sorted(p for p in parts if p not in MODIFIER_ORDER)
    return "+".join(modifiers + others)


def devtools_suspected(
    outer_width: int | None,
    inner_width: int | None,
    outer_height: int | None,
    inner_height: int | None,
    threshold: int = 160,
) -> bool:
    """Docked devtools shrink the inner viewport well below the outer window."""
    width_gap = outer_width - inner_width if outer_width and inner_width else 0
    height_gap = outer_height - inner_height if outer_height and inner_height else 0
    return width_gap > threshold or height_gap > threshold


class IntegrityMonitor:
    """
    Records integrity violations for one formal session.

    Repeated blur signals without an intervening focus count once, and a
    devtools window stays one violation until the heuristic clears.
    """

    def __init__(
        self,
        correlation_id: str,
        now: Callable[[], datetime] | None = None,
        devtools_threshold_px: int = 160,
        forbidden_keys: frozenset[str] = FORBIDDEN_KEY_COMBOS,
        violations: list[Violation] | None = None,
    ):
        self.correlation_id = correlation_id
        self._now = now or (lambda: datetime.now(UTC))
        self.devtools_threshold_px = devtools_threshold_px
        self.forbidden_keys = frozenset(normalize_key_combo(k) for k in forbidden_keys)
        self._violations: list[Violation] = list(violations or [])
        self._focused = True
        self._devtools_open = False
        self._log = logger.bind(correlation_id=correlation_id)

    def observe(self, signal: EnvironmentSignal) -> Violation | None:
        """
        Process one signal.

        Returns:
            The Violation appended, or None if the signal is benign
        """
        violation_type: ViolationType | None = None
        detail = signal.detail

        if signal.type == SignalType.WINDOW_BLUR:
            if self._focused:
                self._focused = False
                violation_type = ViolationType.FOCUS_LOST
        elif signal.type == SignalType.WINDOW_FOCUS:
            self._focused = True
        elif signal.type == SignalType.WINDOW_RESIZE:
            open_now = devtools_suspected(
                signal.outer_width,
                signal.inner_width,
                signal.outer_height,
                signal.inner_height,
                self.devtools_threshold_px,
            )
            if open_now and not self._devtools_open:
                violation_type = ViolationType.DEVTOOLS_OPEN
                detail = detail or "viewport size heuristic"
            self._devtools_open = open_now
        elif signal.type == SignalType.DEVTOOLS:
            if not self._devtools_open:
                violation_type = ViolationType.DEVTOOLS_OPEN
            self._devtools_open = True
        elif signal.type == SignalType.KEY_COMBO:
            combo = normalize_key_combo(signal.keys or "")
            if combo in self.forbidden_keys:
                violation_type = ViolationType.FORBIDDEN_KEY
                detail = combo
        elif signal.type == SignalType.CONTEXT_MENU:
            violation_type = ViolationType.CONTEXT_MENU
        elif signal.type == SignalType.CLIPBOARD:
            violation_type = ViolationType.CLIPBOARD

        if violation_type is None:
            return None

        violation = Violation(type=violation_type, timestamp=self._now(), detail=detail)
        self._violations.append(violation)
        self._log.warning(
            f"Integrity violation #{len(self._violations)}: {violation_type.value}"
            + (f" ({detail})" if detail else "")
        )
        return violation

    def violation_count(self) -> int:
        return len(self._violations)

    def violations(self) -> tuple[Violation, ...]:
        """Read-only view of recorded violations."""
        return tuple(self._violations)

    def summary(self) -> dict[str, int]:
        """Violation counts per type."""
        return dict(Counter(v.type.value for v in self._violations))
