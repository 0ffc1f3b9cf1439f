"""Best-effort extraction of progress events from test runner output.

Each recognizer looks at one line and returns an event or ``None``. They are
tried in ``RECOGNIZERS`` order and the first hit wins, so a line yields at most
one event. Supporting another framework means appending one recognizer.
"""

import logging
import re
from typing import Callable, Dict, Optional, Tuple

from dockstage.models import CurrentTest, PercentUpdate, ProgressEvent, TestOutcome

logger = logging.getLogger("dockstage")

Recognizer = Callable[[str, str], Optional[ProgressEvent]]

ANSI_ESCAPE = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

_PERCENT = re.compile(r"\[\s*(\d{1,3})%\s*\]")
_FILE_MARKER = re.compile(
    r"^\s*(?P<glyph>[✓✔√×✗❯])\s+(?P<path>\S+)\s+\((?P<count>\d+)\s+tests?(?P<rest>[^)]*)\)"
)
_PASSED = re.compile(r"\b(\d+)\s+passed\b")
_FAILED = re.compile(r"\b(\d+)\s+failed\b")
_ERRORS = re.compile(r"\b(\d+)\s+errors?\b")
_SKIPPED = re.compile(r"\b(\d+)\s+skipped\b")
_COUNT = r"\d+\s+(?:passed|failed|errors?|skipped|xfailed|xpassed|warnings?|deselected|rerun|todo)"
# "3 failed, 12 passed in 4.21s", "==== 5 passed ====", "Tests  1 failed | 11 passed (12)"
_SUMMARY_LINE = re.compile(
    rf"^[\s=]*(?:Tests\s+)?{_COUNT}(?:\s*[,|]\s*{_COUNT})*"
    r"(?:\s+\(\d+\))?(?:\s+in\s+[\d.]+m?s(?:\s+\([^)]*\))?)?[\s=]*$"
)
_NODE_ID = re.compile(r"^\s*(?P<node>[\w./\\-]+\.py::\S+)\s*$")

PASS_GLYPHS = frozenset("✓✔√")


def strip_ansi(text: str) -> str:
    return ANSI_ESCAPE.sub("", text)


def recognize_percent(target: str, line: str) -> Optional[ProgressEvent]:
    match = _PERCENT.search(line)
    if not match:
        return None
    return PercentUpdate(target=target, pct=min(100, int(match.group(1))))


def recognize_file_marker(target: str, line: str) -> Optional[ProgressEvent]:
    """vitest-style per-file lines, e.g. ``✓ src/cart.test.ts (5 tests) 12ms``."""
    match = _FILE_MARKER.match(line)
    if not match:
        return None

    count = int(match.group("count"))
    rest = match.group("rest")
    failed = _first_int(_FAILED, rest)
    skipped = _first_int(_SKIPPED, rest)
    if match.group("glyph") not in PASS_GLYPHS and not failed:
        failed = count - skipped
    passed = max(0, count - failed - skipped)
    return TestOutcome(target=target, passed=passed, failed=failed, group=match.group("path"))


def recognize_summary(target: str, line: str) -> Optional[ProgressEvent]:
    """Run-wide counts such as ``12 passed, 3 failed`` or ``3 failed, 1 error in 2.0s``.

    Only lines made of nothing but counts qualify, so log output like
    ``retry 2 failed`` is not mistaken for a summary.
    """
    if not _SUMMARY_LINE.match(line):
        return None
    passed_match = _PASSED.search(line)
    failed_match = _FAILED.search(line)
    errors_match = _ERRORS.search(line)
    if not (passed_match or failed_match or errors_match):
        return None

    passed = int(passed_match.group(1)) if passed_match else 0
    failed = int(failed_match.group(1)) if failed_match else 0
    if errors_match:
        failed += int(errors_match.group(1))
    return TestOutcome(target=target, passed=passed, failed=failed)


def recognize_current_test(target: str, line: str) -> Optional[ProgressEvent]:
    match = _NODE_ID.match(line)
    if not match:
        return None
    return CurrentTest(target=target, name=match.group("node"))


RECOGNIZERS: Tuple[Recognizer, ...] = (
    recognize_percent,
    recognize_file_marker,
    recognize_summary,
    recognize_current_test,
)


def parse_line(
    target: str,
    raw_text: str,
    recognizers: Tuple[Recognizer, ...] = RECOGNIZERS,
) -> Optional[ProgressEvent]:
    line = strip_ansi(raw_text).rstrip()
    if not line.strip():
        return None

    for recognizer in recognizers:
        try:
            event = recognizer(target, line)
        except Exception:
            logger.debug("Recognizer %s failed on line: %r", recognizer.__name__, line, exc_info=True)
            continue
        if event is not None:
            return event
    return None


def _first_int(pattern, text: str) -> int:
    match = pattern.search(text)
    return int(match.group(1)) if match else 0


class OutcomeTally:
    """Running pass/fail counts for one target.

    Per-file outcomes are summed by group; a run-wide summary replaces the
    totals because it already covers every group.
    """

    def __init__(self):
        self.groups: Dict[str, TestOutcome] = {}
        self.passed = 0
        self.failed = 0
        self.seen = False

    def add(self, event: TestOutcome):
        self.seen = True
        if event.group is None:
            self.passed = event.passed
            self.failed = event.failed
            return
        self.groups[event.group] = event
        self.passed = sum(group.passed for group in self.groups.values())
        self.failed = sum(group.failed for group in self.groups.values())
