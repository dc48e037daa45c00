#!/usr/bin/env python3
"""Exceptions raised by the confidential computing setup tool."""

from typing import List, Optional


class CocoError(Exception):
    """Base class for every fatal error; main() turns it into exit code 1."""


class ConfigError(CocoError):
    pass


class CommandError(CocoError):
    """An external command (distrobox, dnf, ansible...) failed."""

    def __init__(self, cmd: List[str], returncode: Optional[int], output: str = ""):
        self.cmd = list(cmd)
        self.returncode = returncode
        self.output = output
        if returncode is None:
            message = f"Command not found: {cmd[0]}"
        else:
            message = f"Command failed with exit code {returncode}: {' '.join(cmd)}"
        super().__init__(message)


class UnsupportedVendorError(CocoError):
    def __init__(self, message: str = "Unknown CPU vendor"):
        super().__init__(message)


class RedfishError(CocoError):
    """Unexpected answer from the remote management controller."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class JobTimeoutError(CocoError):
    def __init__(self, timeout: float, last_result=None):
        self.timeout = timeout
        self.last_result = last_result
        super().__init__(f"Timed out after {timeout:g}s waiting for job completion")
