#!/usr/bin/env python3
"""
Verify that Intel TDX or AMD SEV-SNP is active on this host.

Reads /proc/cpuinfo, dmesg, /sys/kernel/iommu_groups, /dev/sev and
/proc/cmdline, then prints a flat pass/warn report. Missing features are
reported as warnings; only an unknown CPU vendor is fatal.
"""

import subprocess
from dataclasses import dataclass, field
from typing import List, Optional

from coco_detect import (
    IOMMU_GROUPS_PATH,
    SEV_DEVICE_PATH,
    CpuVendor,
    FlagCheck,
    KernelLogCheck,
    check_cpu_flags,
    check_kernel_log,
    classify_vendor,
    count_iommu_groups,
    device_exists,
    require_supported_vendor,
)
from coco_errors import CocoError
from coco_log import log_info, log_warn


TDX_LOG_TAIL = 10
SEV_FLAG_HEAD = 3


@dataclass
class HostSources:
    """Where the verification reads its data from."""
    cpuinfo_path: str = "/proc/cpuinfo"
    cmdline_path: str = "/proc/cmdline"
    iommu_groups_path: str = IOMMU_GROUPS_PATH
    sev_device_path: str = SEV_DEVICE_PATH
    dmesg_cmd: List[str] = field(default_factory=lambda: ["dmesg"])

    def read_cpuinfo(self) -> str:
        try:
            with open(self.cpuinfo_path, 'r', errors='replace') as f:
                return f.read()
        except OSError as e:
            raise CocoError(f"Could not read {self.cpuinfo_path}: {e}")

    def read_cmdline(self) -> str:
        try:
            with open(self.cmdline_path, 'r', errors='replace') as f:
                return f.read().strip()
        except OSError as e:
            log_warn(f"Could not read {self.cmdline_path}: {e}")
            return ""

    def read_dmesg(self) -> str:
        """Return the kernel log, or "" when it cannot be read (e.g. no root)."""
        try:
            result = subprocess.run(
                self.dmesg_cmd,
                capture_output=True,
                text=True,
                errors='replace',
                timeout=30,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            log_warn(f"Could not run {' '.join(self.dmesg_cmd)}: {e}")
            return ""
        if result.returncode != 0:
            log_warn(f"{' '.join(self.dmesg_cmd)} failed: {result.stderr.strip()}")
            return ""
        return result.stdout


@dataclass
class VerifyReport:
    vendor: CpuVendor
    flags: FlagCheck
    kernel_log: KernelLogCheck
    iommu_groups: int
    cmdline: str
    sev_device: Optional[bool] = None


def collect_report(sources: HostSources) -> VerifyReport:
    """Classify the CPU once and run the checks for that vendor."""
    cpuinfo = sources.read_cpuinfo()
    vendor = require_supported_vendor(classify_vendor(cpuinfo))
    dmesg = sources.read_dmesg()

    report = VerifyReport(
        vendor=vendor,
        flags=check_cpu_flags(vendor, cpuinfo),
        kernel_log=check_kernel_log(vendor, dmesg),
        iommu_groups=count_iommu_groups(sources.iommu_groups_path),
        cmdline=sources.read_cmdline(),
    )
    if vendor is CpuVendor.AMD:
        report.sev_device = device_exists(sources.sev_device_path)
    return report


# ============================================================================
# Printing
# ============================================================================

def _print_intel(report: VerifyReport) -> None:
    log_info("Intel CPU detected - checking for TDX...")

    if report.flags.found:
        log_info("✓ TDX CPU flag found in /proc/cpuinfo")
    else:
        log_warn("✗ TDX CPU flag NOT found in /proc/cpuinfo")

    print("")
    log_info("Checking dmesg for TDX initialization...")
    kernel_log = report.kernel_log
    if kernel_log.initialized:
        log_info("✓ TDX module initialized")
        for line in kernel_log.lines[-TDX_LOG_TAIL:]:
            print(line)
    elif kernel_log.lines:
        log_warn("TDX messages found but not confirmed initialized:")
        for line in kernel_log.lines:
            print(line)
    else:
        log_warn("No TDX messages found in dmesg")


def _print_amd(report: VerifyReport) -> None:
    log_info("AMD CPU detected - checking for SEV-SNP...")

    if report.flags.found:
        log_info("✓ SEV/SME CPU flags found in /proc/cpuinfo")
        for line in report.flags.lines[:SEV_FLAG_HEAD]:
            print(line)
    else:
        log_warn("✗ SEV/SME CPU flags NOT found in /proc/cpuinfo")

    print("")
    log_info("Checking dmesg for SEV initialization...")
    kernel_log = report.kernel_log
    if kernel_log.initialized:
        log_info("✓ SEV module initialized")
        for line in kernel_log.activated:
            print(line)
    elif kernel_log.lines:
        log_warn("SEV messages found but not confirmed initialized:")
        for line in kernel_log.lines:
            print(line)
    else:
        log_warn("No SEV messages found in dmesg")

    if report.sev_device:
        log_info("✓ /dev/sev device exists")
    else:
        log_warn("✗ /dev/sev device not found")


VENDOR_PRINTERS = {
    CpuVendor.INTEL: _print_intel,
    CpuVendor.AMD: _print_amd,
}


def print_report(report: VerifyReport) -> None:
    VENDOR_PRINTERS[report.vendor](report)

    print("")
    log_info("Checking IOMMU configuration...")
    if report.iommu_groups > 0:
        log_info(f"✓ IOMMU is enabled ({report.iommu_groups} groups found)")
    else:
        log_warn("✗ IOMMU groups not found - IOMMU may not be enabled")

    print("")
    log_info("Current kernel command line:")
    print(report.cmdline)
    print("")


def verify_coco(sources: Optional[HostSources] = None) -> int:
    """
    Run the verification and print the report.

    Returns:
        0 once the report is printed. Raises UnsupportedVendorError for an
        unknown CPU vendor.
    """
    sources = sources or HostSources()
    log_info("Verifying Confidential Computing configuration...")
    report = collect_report(sources)
    print_report(report)
    return 0
