#!/usr/bin/env python3
"""
Configuration for the confidential computing setup tool.

Values are built once at startup and passed around explicitly.
Precedence: explicit overrides (CLI flags) > environment / .env > defaults.
"""

import os
from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from dotenv import load_dotenv

from coco_errors import ConfigError


# ============================================================================
# Defaults
# ============================================================================

DEFAULT_DISTROBOX_NAME = "fedora-coco-ansible"
DEFAULT_FEDORA_VERSION = "43"
DEFAULT_PLAYBOOK_DIRNAME = "ansible-coco"
DEFAULT_COLLECTION = "dellemc.openmanage"
DEFAULT_BIOS_JOB_TIMEOUT = 1200
DEFAULT_BIOS_POLL_INTERVAL = 30
DEFAULT_REBOOT_TIMEOUT = 600

DEFAULT_ADDITIONAL_PACKAGES = (
    "systemd",
    "ansible",
    "python3-pip",
    "python3-devel",
    "gcc",
    "redhat-rpm-config",
    "openssl-devel",
    "libcurl-devel",
    "python3-requests",
)


@dataclass(frozen=True)
class CocoConfig:
    distrobox_name: str = DEFAULT_DISTROBOX_NAME
    fedora_version: str = DEFAULT_FEDORA_VERSION
    playbook_dir: str = field(
        default_factory=lambda: os.path.join(os.path.expanduser("~"), DEFAULT_PLAYBOOK_DIRNAME)
    )
    additional_packages: Tuple[str, ...] = DEFAULT_ADDITIONAL_PACKAGES
    collection: str = DEFAULT_COLLECTION
    bios_job_timeout: int = DEFAULT_BIOS_JOB_TIMEOUT
    bios_poll_interval: int = DEFAULT_BIOS_POLL_INTERVAL
    reboot_timeout: int = DEFAULT_REBOOT_TIMEOUT

    @property
    def image(self) -> str:
        return f"registry.fedoraproject.org/fedora:{self.fedora_version}"


@dataclass(frozen=True)
class IdracCredentials:
    host: Optional[str]
    user: str
    password: Optional[str]


def _str_from_env(name: str, default: str) -> str:
    """Blank values (e.g. `COCO_DISTROBOX_NAME=` in .env) fall back to the default."""
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip()


def _int_from_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{name} must be an integer, got {raw!r}")


def load_config(**overrides) -> CocoConfig:
    """
    Build the configuration from defaults, the environment and overrides.

    Args:
        **overrides: CocoConfig field values; None means "not given".

    Returns:
        CocoConfig
    """
    load_dotenv()

    config = CocoConfig(
        distrobox_name=_str_from_env("COCO_DISTROBOX_NAME", DEFAULT_DISTROBOX_NAME),
        fedora_version=_str_from_env("COCO_FEDORA_VERSION", DEFAULT_FEDORA_VERSION),
        playbook_dir=os.path.expanduser(
            _str_from_env("COCO_PLAYBOOK_DIR", os.path.join("~", DEFAULT_PLAYBOOK_DIRNAME))
        ),
        bios_job_timeout=_int_from_env("COCO_BIOS_JOB_TIMEOUT", DEFAULT_BIOS_JOB_TIMEOUT),
    )

    given = {key: value for key, value in overrides.items() if value is not None}
    if "playbook_dir" in given:
        given["playbook_dir"] = os.path.expanduser(given["playbook_dir"])
    try:
        return replace(config, **given)
    except TypeError as e:
        raise ConfigError(f"Invalid configuration override: {e}")


def load_idrac_credentials(host: Optional[str] = None, user: Optional[str] = None) -> IdracCredentials:
    """Read iDRAC connection details from the environment (.env supported)."""
    load_dotenv()
    return IdracCredentials(
        host=host or os.getenv("IDRAC_HOST"),
        user=user or os.getenv("IDRAC_USER", "root"),
        password=os.getenv("IDRAC_PASSWORD"),
    )
