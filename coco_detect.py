#!/usr/bin/env python3
"""
CPU vendor classification and confidential computing feature checks.

All checks are plain text matching against kernel-exposed sources:
/proc/cpuinfo, the kernel ring buffer, /sys/kernel/iommu_groups and /dev/sev.
The functions here take the text (or path) and never print anything.
"""

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Tuple

from coco_errors import UnsupportedVendorError


IOMMU_GROUPS_PATH = "/sys/kernel/iommu_groups"
SEV_DEVICE_PATH = "/dev/sev"


# ============================================================================
# Vendor classification
# ============================================================================

class CpuVendor(Enum):
    INTEL = ("Intel", "intel", "GenuineIntel")
    AMD = ("AMD", "amd", "AuthenticAMD")
    UNKNOWN = ("Unknown", "unknown", None)

    def __init__(self, label: str, fact: str, marker):
        self.label = label
        self.fact = fact
        self.marker = marker


# Checked in order; the first marker found wins.
VENDOR_ORDER = (CpuVendor.INTEL, CpuVendor.AMD)


def classify_vendor(cpuinfo: str) -> CpuVendor:
    """Return the CPU vendor whose marker occurs in the /proc/cpuinfo text."""
    for vendor in VENDOR_ORDER:
        if vendor.marker in cpuinfo:
            return vendor
    return CpuVendor.UNKNOWN


def require_supported_vendor(vendor: CpuVendor) -> CpuVendor:
    if vendor is CpuVendor.UNKNOWN:
        raise UnsupportedVendorError()
    return vendor


# ============================================================================
# Per-vendor feature definitions
# ============================================================================

@dataclass(frozen=True)
class FeatureSpec:
    name: str
    cpu_flag_pattern: str
    log_pattern: str
    activation_markers: Tuple[str, ...]


FEATURES = {
    CpuVendor.INTEL: FeatureSpec(
        name="TDX",
        cpu_flag_pattern=r"tdx",
        log_pattern=r"tdx",
        activation_markers=("initialized",),
    ),
    CpuVendor.AMD: FeatureSpec(
        name="SEV",
        cpu_flag_pattern=r"sev|sme",
        log_pattern=r"sev|ccp",
        activation_markers=("enabled", "initialized", "API", "active"),
    ),
}


def feature_for(vendor: CpuVendor) -> FeatureSpec:
    return FEATURES[require_supported_vendor(vendor)]


# ============================================================================
# CPU flags
# ============================================================================

@dataclass
class FlagCheck:
    feature: str
    lines: List[str] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.lines)

    @property
    def found(self) -> bool:
        return self.count > 0


def _matching_lines(text: str, pattern: str, flags: int = 0) -> List[str]:
    regex = re.compile(pattern, flags)
    return [line for line in text.splitlines() if regex.search(line)]


def tdx_flag_count(cpuinfo: str) -> int:
    """Number of /proc/cpuinfo lines mentioning tdx (like grep -c)."""
    return len(_matching_lines(cpuinfo, FEATURES[CpuVendor.INTEL].cpu_flag_pattern))


def has_tdx_flag(cpuinfo: str) -> bool:
    return tdx_flag_count(cpuinfo) > 0


def sev_flag_lines(cpuinfo: str) -> List[str]:
    return _matching_lines(cpuinfo, FEATURES[CpuVendor.AMD].cpu_flag_pattern)


def check_cpu_flags(vendor: CpuVendor, cpuinfo: str) -> FlagCheck:
    spec = feature_for(vendor)
    return FlagCheck(feature=spec.name, lines=_matching_lines(cpuinfo, spec.cpu_flag_pattern))


# ============================================================================
# Kernel log
# ============================================================================

@dataclass
class KernelLogCheck:
    feature: str
    lines: List[str] = field(default_factory=list)
    activated: List[str] = field(default_factory=list)

    @property
    def initialized(self) -> bool:
        return bool(self.activated)


def check_kernel_log(vendor: CpuVendor, dmesg: str) -> KernelLogCheck:
    """
    Find the kernel log lines that mention the vendor's feature.

    The feature marker is matched case-insensitively; activation markers
    ("initialized", "enabled", ...) are matched as written.
    """
    spec = feature_for(vendor)
    lines = _matching_lines(dmesg, spec.log_pattern, re.IGNORECASE)
    activated = [
        line for line in lines
        if any(marker in line for marker in spec.activation_markers)
    ]
    return KernelLogCheck(feature=spec.name, lines=lines, activated=activated)


# ============================================================================
# IOMMU / devices
# ============================================================================

def count_iommu_groups(path: str = IOMMU_GROUPS_PATH) -> int:
    """Count the IOMMU groups exposed under /sys/kernel/iommu_groups."""
    try:
        return len(os.listdir(path))
    except OSError:
        return 0


def device_exists(path: str = SEV_DEVICE_PATH) -> bool:
    return os.path.exists(path)
