"""
Pattern detectors for captured Claude Code pane text.

Every detector is a pure function: text in, structured signal or None out.
They are heuristic and tuned to the current Claude Code TUI; anything they
do not recognize is reported as "no signal" rather than raised.
"""

import logging
import re
from dataclasses import dataclass
from typing import List, Optional

from .models import PermissionOption

logger = logging.getLogger(__name__)

# Regex to match ANSI escape codes that may survive capture-pane
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences
    r'\x1b\][^\x07]*\x07|'       # OSC sequences
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'\x1b[=>78DMEHc]'           # Single-char commands
)

# How far back from the end of the pane to look for a prompt
PROCEED_SCAN_LINES = 30
# Lines after the proceed line that may hold the footer / selector
FOOTER_SCAN_LINES = 15
# Lines after the proceed line that may hold numbered options
OPTION_SCAN_LINES = 10
# Lines before the proceed line searched for the tool header
TOOL_SCAN_LINES = 20
# Lines before the proceed line included in the context excerpt
CONTEXT_LINES_BEFORE = 10

_proceed_re = re.compile(r"(Do you want|Would you like) to proceed\?", re.IGNORECASE)
_footer_re = re.compile(r"Esc to cancel|ctrl-g to edit", re.IGNORECASE)
_options_end_re = re.compile(r"Esc to cancel", re.IGNORECASE)
_selector_re = re.compile(r"^\s*❯")
_option_re = re.compile(r"^\s*[❯>]?\s*(\d+)\.\s+(.+)$")
# "● Bash(rm /tmp/x)"; ◐ while running, · in plan mode
_tool_call_re = re.compile(r"[●◐·]\s*(\w+)\s*\(")
_tool_header_re = re.compile(
    r"^\s*(Bash|Read|Write|Edit|Grep|Glob|Task|WebFetch|WebSearch)\s+\w+",
    re.IGNORECASE,
)

BYPASS_WARNING_TITLE = "WARNING"
BYPASS_WARNING_MODE = "Bypass Permissions mode"

# "↓ 1,234 tokens" and "↓ 12.5k tokens" in the status line
_tokens_plain_re = re.compile(r"↓\s*([0-9,]+)\s*tokens?", re.IGNORECASE)
_tokens_k_re = re.compile(r"↓\s*([0-9.]+)k\s*tokens?", re.IGNORECASE)


@dataclass
class DetectedPrompt:
    """A permission prompt recognized in pane text."""
    tool: str
    context: str
    options: List[PermissionOption]


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes from text."""
    return ANSI_ESCAPE_RE.sub('', text)


def _pane_lines(output: str) -> List[str]:
    # Drop the blank rows below the cursor so the scan window covers real text
    return strip_ansi(output).rstrip().split("\n")


def detect_permission_prompt(output: Optional[str]) -> Optional[DetectedPrompt]:
    """
    Find an interactive "proceed?" permission prompt at the bottom of a pane.

    The proceed line alone is not enough: it must be followed by the
    "Esc to cancel" / "ctrl-g to edit" footer or the ❯ selection cursor,
    and by at least two numbered options.

    Args:
        output: Captured pane text

    Returns:
        DetectedPrompt or None
    """
    if not output or not isinstance(output, str):
        return None
    try:
        return _detect_permission_prompt(_pane_lines(output))
    except Exception as e:
        logger.debug(f"Permission detector failed on malformed output: {e}")
        return None


def _detect_permission_prompt(lines: List[str]) -> Optional[DetectedPrompt]:
    proceed_idx = -1
    for i in range(len(lines) - 1, max(0, len(lines) - PROCEED_SCAN_LINES) - 1, -1):
        if _proceed_re.search(lines[i]):
            proceed_idx = i
            break
    if proceed_idx == -1:
        return None

    has_footer = False
    has_selector = False
    for line in lines[proceed_idx + 1:proceed_idx + FOOTER_SCAN_LINES]:
        if _footer_re.search(line):
            has_footer = True
            break
        if _selector_re.match(line):
            has_selector = True
    if not has_footer and not has_selector:
        logger.debug("Ignoring proceed line without footer or selector")
        return None

    options = []
    for line in lines[proceed_idx + 1:proceed_idx + OPTION_SCAN_LINES]:
        if _options_end_re.search(line):
            break
        match = _option_re.match(line)
        if match:
            options.append(PermissionOption(number=match.group(1), label=match.group(2).strip()))
    if len(options) < 2:
        return None

    tool = "Unknown"
    for i in range(proceed_idx, max(0, proceed_idx - TOOL_SCAN_LINES) - 1, -1):
        match = _tool_call_re.search(lines[i]) or _tool_header_re.match(lines[i])
        if match:
            tool = match.group(1)
            break

    start = max(0, proceed_idx - CONTEXT_LINES_BEFORE)
    context = "\n".join(lines[start:proceed_idx + 1 + len(options)]).strip()

    return DetectedPrompt(tool=tool, context=context, options=options)


def detect_bypass_warning(output: Optional[str]) -> bool:
    """Check for the bypass-permissions startup warning screen."""
    if not output or not isinstance(output, str):
        return False
    return BYPASS_WARNING_TITLE in output and BYPASS_WARNING_MODE in output


def parse_token_count(output: Optional[str]) -> Optional[int]:
    """
    Extract the largest token count shown in the pane.

    Args:
        output: Captured pane text

    Returns:
        Token count, or None if no positive count is present
    """
    if not output or not isinstance(output, str):
        return None

    max_tokens = 0
    for match in _tokens_plain_re.finditer(output):
        digits = match.group(1).replace(",", "")
        if digits.isdigit():
            max_tokens = max(max_tokens, int(digits))

    for match in _tokens_k_re.finditer(output):
        try:
            value = float(match.group(1))
        except ValueError:
            continue
        max_tokens = max(max_tokens, round(value * 1000))

    return max_tokens if max_tokens > 0 else None
