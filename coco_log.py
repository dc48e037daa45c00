#!/usr/bin/env python3
"""
Console output helpers.

Every status line carries a coloured level tag, e.g. "[INFO] ...".
Colours are dropped when the stream is not a terminal or NO_COLOR is set.
"""

import os
import sys


RED = '\033[0;31m'
GREEN = '\033[0;32m'
YELLOW = '\033[1;33m'
NC = '\033[0m'  # No Color


def _use_color(stream) -> bool:
    if os.environ.get('NO_COLOR'):
        return False
    isatty = getattr(stream, 'isatty', None)
    return bool(isatty and isatty())


def _tag(level: str, color: str, stream) -> str:
    if _use_color(stream):
        return f"{color}[{level}]{NC}"
    return f"[{level}]"


def log_info(msg: str) -> None:
    print(f"{_tag('INFO', GREEN, sys.stdout)} {msg}")


def log_warn(msg: str) -> None:
    print(f"{_tag('WARN', YELLOW, sys.stdout)} {msg}")


def log_error(msg: str) -> None:
    print(f"{_tag('ERROR', RED, sys.stderr)} {msg}", file=sys.stderr)


def print_banner(title: str, width: int = 80) -> None:
    """Print a section header framed by '=' rules."""
    print("\n" + "=" * width)
    print(title)
    print("=" * width)
