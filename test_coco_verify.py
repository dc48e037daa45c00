import pytest

from coco_detect import CpuVendor
from coco_errors import CocoError, UnsupportedVendorError
from coco_verify import HostSources, collect_report, verify_coco


def make_sources(tmp_path, cpuinfo, dmesg="", groups=0, sev_device=False, cmdline="BOOT_IMAGE=/vmlinuz ro"):
    cpuinfo_path = tmp_path / "cpuinfo"
    cpuinfo_path.write_text(cpuinfo)
    dmesg_path = tmp_path / "dmesg"
    dmesg_path.write_text(dmesg)
    cmdline_path = tmp_path / "cmdline"
    cmdline_path.write_text(cmdline + "\n")
    groups_path = tmp_path / "iommu_groups"
    groups_path.mkdir()
    for i in range(groups):
        (groups_path / str(i)).mkdir()
    sev_path = tmp_path / "sev"
    if sev_device:
        sev_path.touch()
    return HostSources(
        cpuinfo_path=str(cpuinfo_path),
        cmdline_path=str(cmdline_path),
        iommu_groups_path=str(groups_path),
        sev_device_path=str(sev_path),
        dmesg_cmd=["cat", str(dmesg_path)],
    )


def test_intel_tdx_enabled_report(tmp_path, capsys):
    sources = make_sources(
        tmp_path,
        cpuinfo="vendor_id\t: GenuineIntel\nflags\t\t: fpu tdx_host_platform\n",
        dmesg="[    0.1] Linux version\n[    9.7] virt/tdx: module initialized\n",
        groups=12,
        cmdline="BOOT_IMAGE=/vmlinuz kvm_intel.tdx=1",
    )

    assert verify_coco(sources) == 0

    out = capsys.readouterr().out
    assert "[INFO] Intel CPU detected - checking for TDX..." in out
    assert "[INFO] ✓ TDX CPU flag found in /proc/cpuinfo" in out
    assert "[INFO] ✓ TDX module initialized" in out
    assert "[    9.7] virt/tdx: module initialized" in out
    assert "[INFO] ✓ IOMMU is enabled (12 groups found)" in out
    assert "BOOT_IMAGE=/vmlinuz kvm_intel.tdx=1" in out
    assert "[WARN]" not in out


def test_intel_tdx_messages_not_initialized(tmp_path, capsys):
    sources = make_sources(
        tmp_path,
        cpuinfo="vendor_id\t: GenuineIntel\nflags\t\t: fpu\n",
        dmesg="[    1.0] tdx: SEAMRR not enabled\n",
        groups=3,
    )

    assert verify_coco(sources) == 0

    out = capsys.readouterr().out
    assert "[WARN] ✗ TDX CPU flag NOT found in /proc/cpuinfo" in out
    assert "[WARN] TDX messages found but not confirmed initialized:" in out
    assert "[    1.0] tdx: SEAMRR not enabled" in out


def test_amd_nothing_enabled_report(tmp_path, capsys):
    sources = make_sources(
        tmp_path,
        cpuinfo="vendor_id\t: AuthenticAMD\nflags\t\t: fpu vme\n",
        dmesg="[    0.1] Linux version\n",
        groups=0,
        sev_device=False,
    )

    assert verify_coco(sources) == 0

    out = capsys.readouterr().out
    assert "[INFO] AMD CPU detected - checking for SEV-SNP..." in out
    assert "[WARN] ✗ SEV/SME CPU flags NOT found in /proc/cpuinfo" in out
    assert "[WARN] No SEV messages found in dmesg" in out
    assert "[WARN] ✗ /dev/sev device not found" in out
    assert "[WARN] ✗ IOMMU groups not found - IOMMU may not be enabled" in out


def test_amd_sev_enabled_report(tmp_path, capsys):
    sources = make_sources(
        tmp_path,
        cpuinfo="vendor_id\t: AuthenticAMD\nflags\t\t: sme sev sev_es sev_snp\n" * 5,
        dmesg="[    3.0] ccp 0000:01:00.5: SEV-SNP API:1.55 build:21\n[    3.1] ccp 0000:01:00.5: tee enabled\n",
        groups=40,
        sev_device=True,
    )

    report = collect_report(sources)
    assert report.vendor is CpuVendor.AMD
    assert report.sev_device is True
    assert report.iommu_groups == 40

    verify_coco(sources)
    out = capsys.readouterr().out
    assert "[INFO] ✓ SEV module initialized" in out
    assert "[INFO] ✓ /dev/sev device exists" in out
    assert out.count("flags\t\t: sme sev sev_es sev_snp") == 3


def test_unknown_vendor_is_fatal(tmp_path):
    sources = make_sources(tmp_path, cpuinfo="vendor_id\t: HygonGenuine\n")
    with pytest.raises(UnsupportedVendorError):
        verify_coco(sources)


def test_intel_report_has_no_sev_device(tmp_path):
    sources = make_sources(tmp_path, cpuinfo="GenuineIntel\n", sev_device=True)
    assert collect_report(sources).sev_device is None


def test_dmesg_failure_is_a_warning(tmp_path, capsys):
    sources = make_sources(tmp_path, cpuinfo="GenuineIntel\n")
    sources.dmesg_cmd = ["cat", str(tmp_path / "does-not-exist")]

    assert verify_coco(sources) == 0

    out = capsys.readouterr().out
    assert "[WARN] No TDX messages found in dmesg" in out


def test_missing_cpuinfo_raises(tmp_path):
    sources = HostSources(cpuinfo_path=str(tmp_path / "nope"))
    with pytest.raises(CocoError):
        sources.read_cpuinfo()


def test_dmesg_with_invalid_utf8_bytes(tmp_path, capsys):
    sources = make_sources(tmp_path, cpuinfo="vendor_id\t: GenuineIntel\nflags\t\t: tdx_host_platform\n", groups=2)
    (tmp_path / "dmesg").write_bytes(
        b"[    2.1] usb 1-1: Product: \xff\xfe bad\n[    9.7] virt/tdx: module initialized\n"
    )

    assert verify_coco(sources) == 0

    out = capsys.readouterr().out
    assert "[INFO] ✓ TDX module initialized" in out
    assert "[    9.7] virt/tdx: module initialized" in out


def test_cpuinfo_and_cmdline_with_invalid_utf8_bytes(tmp_path):
    sources = make_sources(tmp_path, cpuinfo="")
    (tmp_path / "cpuinfo").write_bytes(b"vendor_id\t: AuthenticAMD\nmodel name\t: \xff\xfe\n")
    (tmp_path / "cmdline").write_bytes(b"BOOT_IMAGE=/vmlinuz label=\xff\n")

    report = collect_report(sources)

    assert report.vendor is CpuVendor.AMD
    assert report.cmdline.startswith("BOOT_IMAGE=/vmlinuz label=")


def test_initialized_tdx_prints_last_ten_lines(tmp_path, capsys):
    dmesg = "".join(f"[    1.{i:02d}] virt/tdx: step {i:02d}\n" for i in range(15))
    dmesg += "[    9.99] virt/tdx: module initialized\n"
    sources = make_sources(tmp_path, cpuinfo="GenuineIntel\n", dmesg=dmesg, groups=1)

    verify_coco(sources)

    out = capsys.readouterr().out
    for i in range(6):
        assert f"virt/tdx: step {i:02d}" not in out
    for i in range(6, 15):
        assert f"virt/tdx: step {i:02d}" in out
    assert "[    9.99] virt/tdx: module initialized" in out
