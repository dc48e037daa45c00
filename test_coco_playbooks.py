import subprocess

import pytest
import yaml

import coco_playbooks
from coco_config import CocoConfig
from coco_detect import CpuVendor
from coco_playbooks import (
    BIOS_ATTRIBUTES,
    CONFIGURE_FILE,
    INVENTORY_FILE,
    KERNEL_PARAMS,
    README_FILE,
    VERIFY_FILE,
    PlaybookVariant,
    check_syntax,
    dump_playbook,
    write_playbooks,
)


@pytest.fixture
def config(tmp_path):
    return CocoConfig(playbook_dir=str(tmp_path / "ansible-coco"), bios_job_timeout=900)


def load(path):
    with open(path, 'r') as f:
        return yaml.safe_load(f)


def task_names(play):
    return [task["name"] for task in play["tasks"]]


def test_write_playbooks_creates_all_files(config):
    written = write_playbooks(config)

    assert set(written) == {INVENTORY_FILE, CONFIGURE_FILE, VERIFY_FILE, README_FILE}
    for path in written.values():
        assert path.is_file()
    assert written[CONFIGURE_FILE].read_text().startswith("---\n")


def test_inventory_groups(config):
    inventory = write_playbooks(config)[INVENTORY_FILE].read_text()
    assert "[localhost]\n127.0.0.1 ansible_connection=local" in inventory
    assert "[dell_servers]" in inventory


def test_idrac_variant(config):
    plays = load(write_playbooks(config, PlaybookVariant.IDRAC)[CONFIGURE_FILE])

    assert [play["hosts"] for play in plays] == ["localhost", "dell_servers"]
    detect, bios = plays
    assert "Set CPU vendor fact for use in other plays" in task_names(detect)

    bios_tasks = {task["name"]: task for task in bios["tasks"]}
    intel = bios_tasks["Configure BIOS for Intel TDX"]["dellemc.openmanage.idrac_bios"]
    amd = bios_tasks["Configure BIOS for AMD SEV-SNP"]["dellemc.openmanage.idrac_bios"]
    assert intel["attributes"] == BIOS_ATTRIBUTES[CpuVendor.INTEL]
    assert amd["attributes"] == BIOS_ATTRIBUTES[CpuVendor.AMD]
    assert intel["job_wait_timeout"] == 900
    assert intel["apply_time"] == "Immediate"
    assert bios_tasks["Configure BIOS for Intel TDX"]["when"] == "cpu_vendor == 'intel'"
    assert bios["vars"]["cpu_vendor"] == "{{ hostvars['localhost']['cpu_vendor'] }}"


def test_bios_attribute_values():
    assert BIOS_ATTRIBUTES[CpuVendor.INTEL]["IntelTdx"] == "Enabled"
    assert BIOS_ATTRIBUTES[CpuVendor.INTEL]["GlobalMemIntegrity"] == "Disabled"
    assert BIOS_ATTRIBUTES[CpuVendor.INTEL]["IntelTdxKeySplit"] == "1"
    assert BIOS_ATTRIBUTES[CpuVendor.AMD]["SevSnp"] == "Enabled"
    assert BIOS_ATTRIBUTES[CpuVendor.AMD]["IommuSupport"] == "Enabled"


def test_detect_variant_makes_no_changes(config):
    plays = load(write_playbooks(config, PlaybookVariant.DETECT)[CONFIGURE_FILE])

    assert len(plays) == 1
    names = task_names(plays[0])
    assert "Count TDX CPU flags" in names
    assert "Check SEV CPU flags" in names
    text = yaml.dump(plays)
    assert "idrac_bios" not in text
    assert "lineinfile" not in text


def test_grub_variant(config):
    plays = load(write_playbooks(config, PlaybookVariant.GRUB)[CONFIGURE_FILE])

    grub = plays[1]
    assert grub["hosts"] == "localhost"
    assert grub["vars"]["kernel_params"]["amd"] == KERNEL_PARAMS[CpuVendor.AMD]
    assert grub["vars"]["kernel_params"]["intel"] == KERNEL_PARAMS[CpuVendor.INTEL]

    tasks = {task["name"]: task for task in grub["tasks"]}
    lineinfile = tasks["Add confidential computing kernel parameters"]["ansible.builtin.lineinfile"]
    assert lineinfile["path"] == "/etc/default/grub"
    assert lineinfile["backup"] is True
    assert lineinfile["backrefs"] is True
    assert lineinfile["line"] == 'GRUB_CMDLINE_LINUX="\\1 {{ item }}"'
    assert tasks["Regenerate GRUB configuration"]["ansible.builtin.command"] == \
        "grub2-mkconfig -o /boot/grub2/grub.cfg"
    assert tasks["Reboot to apply kernel parameters"]["ansible.builtin.reboot"] == {"reboot_timeout": 600}


def test_verify_playbook_same_for_every_variant(config, tmp_path):
    contents = set()
    for variant in PlaybookVariant:
        contents.add(write_playbooks(config, variant)[VERIFY_FILE].read_text())
    assert len(contents) == 1

    play = yaml.safe_load(contents.pop())[0]
    names = task_names(play)
    assert "Intel TDX verification tasks" in names
    assert "AMD SEV-SNP verification tasks" in names
    assert "Check kernel command line" in names


def test_dump_playbook_uses_literal_blocks_and_no_anchors():
    shared = {"msg": "hello"}
    text = dump_playbook([{"tasks": [{"debug": shared}, {"debug": shared}], "script": "a\nb\n"}])
    assert "&id" not in text
    assert "script: |" in text


def test_readme_mentions_variant(config):
    readme = write_playbooks(config, PlaybookVariant.GRUB)[README_FILE].read_text()
    assert "GRUB_CMDLINE_LINUX" in readme
    assert "kvm_amd.sev_snp=1" in readme


def test_check_syntax_ok(config, monkeypatch):
    calls = []

    def fake_run(cmd, **kwargs):
        calls.append(cmd)
        return subprocess.CompletedProcess(cmd, 0, stdout="playbook: x\n", stderr="")

    monkeypatch.setattr(coco_playbooks.subprocess, "run", fake_run)
    ok, message = check_syntax(config, "/tmp/pb/verify_coco.yaml")

    assert ok and message == ""
    assert calls[0][:4] == ["distrobox", "enter", config.distrobox_name, "--"]
    assert "--syntax-check" in calls[0]
    assert "/tmp/pb/inventory.ini" in calls[0]


def test_check_syntax_failure(config, monkeypatch):
    def fake_run(cmd, **kwargs):
        return subprocess.CompletedProcess(cmd, 4, stdout="", stderr="ERROR! bad yaml")

    monkeypatch.setattr(coco_playbooks.subprocess, "run", fake_run)
    ok, message = check_syntax(config, "/tmp/pb/configure_coco.yaml")

    assert not ok
    assert "ERROR! bad yaml" in message
