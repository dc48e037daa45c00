#!/usr/bin/env python3
"""
Generate the Ansible inventory, playbooks and README for confidential
computing setup.

Files written to the playbook directory:
- inventory.ini       localhost + dell_servers placeholder group
- configure_coco.yaml detection only, iDRAC BIOS configuration, or GRUB
                      kernel parameters, depending on the variant
- verify_coco.yaml    vendor detection + TDX / SEV-SNP checks
- README.md
"""

import os
import subprocess
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Tuple

import yaml

from coco_config import CocoConfig
from coco_detect import CpuVendor
from coco_log import log_info


INVENTORY_FILE = "inventory.ini"
CONFIGURE_FILE = "configure_coco.yaml"
VERIFY_FILE = "verify_coco.yaml"
README_FILE = "README.md"

GRUB_DEFAULTS = "/etc/default/grub"
GRUB_CONFIG = "/boot/grub2/grub.cfg"


class PlaybookVariant(str, Enum):
    DETECT = "detect"
    IDRAC = "idrac"
    GRUB = "grub"


BIOS_ATTRIBUTES: Dict[CpuVendor, Dict[str, str]] = {
    CpuVendor.INTEL: {
        "MemOpMode": "OptimizerMode",
        "MemEncryption": "MultiKey",
        "GlobalMemIntegrity": "Disabled",
        "IntelTdx": "Enabled",
        "IntelTdxKeySplit": "1",
        "TdxSeamLoader": "Enabled",
        "SriovGlobalEnable": "Enabled",
        "VtForDirectIo": "Enabled",
        "ProcVirtualization": "Enabled",
    },
    CpuVendor.AMD: {
        "MemOpMode": "OptimizerMode",
        "SecureMemoryEncryption": "Enabled",
        "SevSnp": "Enabled",
        "SnpMemCoverage": "Enabled",
        "SriovGlobalEnable": "Enabled",
        "IommuSupport": "Enabled",
        "ProcVirtualization": "Enabled",
    },
}

KERNEL_PARAMS: Dict[CpuVendor, List[str]] = {
    CpuVendor.INTEL: ["kvm_intel.tdx=1", "nohibernate", "intel_iommu=on"],
    CpuVendor.AMD: ["mem_encrypt=on", "kvm_amd.sev=1", "kvm_amd.sev_snp=1", "amd_iommu=on"],
}


# ============================================================================
# YAML output
# ============================================================================

class PlaybookDumper(yaml.SafeDumper):
    """Dumper that writes multi-line strings as literal blocks and never emits anchors."""

    def ignore_aliases(self, data):
        return True


def _str_representer(dumper, data):
    if '\n' in data:
        return dumper.represent_scalar('tag:yaml.org,2002:str', data, style='|')
    return dumper.represent_scalar('tag:yaml.org,2002:str', data)


yaml.add_representer(str, _str_representer, Dumper=PlaybookDumper)


def dump_playbook(plays: List[Dict[str, Any]]) -> str:
    return yaml.dump(
        plays,
        Dumper=PlaybookDumper,
        default_flow_style=False,
        sort_keys=False,
        explicit_start=True,
        width=120,
    )


# ============================================================================
# Plays
# ============================================================================

def _gather_cpuinfo_task() -> Dict[str, Any]:
    return {
        "name": "Gather CPU information",
        "ansible.builtin.command": "cat /proc/cpuinfo",
        "register": "cpuinfo_output",
        "changed_when": False,
    }


def _detect_vendor_task() -> Dict[str, Any]:
    return {
        "name": "Detect CPU vendor",
        "ansible.builtin.set_fact": {
            "is_intel": f"{{{{ '{CpuVendor.INTEL.marker}' in cpuinfo_output.stdout }}}}",
            "is_amd": f"{{{{ '{CpuVendor.AMD.marker}' in cpuinfo_output.stdout }}}}",
        },
    }


VENDOR_LABEL_EXPR = "{{ 'Intel' if is_intel else 'AMD' if is_amd else 'Unknown' }}"


def detection_play(report_flags: bool = False) -> Dict[str, Any]:
    """Play that classifies the local CPU and caches the cpu_vendor fact."""
    tasks = [
        _gather_cpuinfo_task(),
        _detect_vendor_task(),
        {
            "name": "Display detected CPU vendor",
            "ansible.builtin.debug": {"msg": f"Detected CPU: {VENDOR_LABEL_EXPR}"},
        },
        {
            "name": "Fail if CPU vendor is not Intel or AMD",
            "ansible.builtin.fail": {"msg": "This playbook only supports Intel or AMD processors"},
            "when": "not (is_intel or is_amd)",
        },
        {
            "name": "Set CPU vendor fact for use in other plays",
            "ansible.builtin.set_fact": {
                "cpu_vendor": "{{ 'intel' if is_intel else 'amd' if is_amd else 'unknown' }}",
                "cacheable": True,
            },
        },
    ]

    if report_flags:
        tasks.extend([
            {
                "name": "Count TDX CPU flags",
                "ansible.builtin.shell": "grep -c 'tdx' /proc/cpuinfo || true",
                "register": "tdx_flag",
                "changed_when": False,
                "when": "is_intel",
            },
            {
                "name": "Display TDX CPU flag count",
                "ansible.builtin.debug": {"msg": "TDX CPU flag count: {{ tdx_flag.stdout }}"},
                "when": "is_intel",
            },
            {
                "name": "Check SEV CPU flags",
                "ansible.builtin.shell": "grep -E 'sev|sme' /proc/cpuinfo | head -5 || echo \"No SEV flags found\"",
                "register": "sev_flags",
                "changed_when": False,
                "when": "is_amd",
            },
            {
                "name": "Display SEV CPU flags",
                "ansible.builtin.debug": {"msg": "{{ sev_flags.stdout_lines }}"},
                "when": "is_amd",
            },
        ])

    return {
        "name": "Detect CPU Type on Local Host",
        "hosts": "localhost",
        "gather_facts": True,
        "become": True,
        "tasks": tasks,
    }


def _idrac_connection() -> Dict[str, Any]:
    return {
        "idrac_ip": "{{ inventory_hostname }}",
        "idrac_user": "{{ ansible_user }}",
        "idrac_password": "{{ ansible_password }}",
        "validate_certs": False,
    }


def _bios_tasks(vendor: CpuVendor, config: CocoConfig) -> List[Dict[str, Any]]:
    label = {CpuVendor.INTEL: "Intel TDX", CpuVendor.AMD: "AMD SEV-SNP"}[vendor]
    result_var = f"{vendor.fact}_bios_result"
    condition = f"cpu_vendor == '{vendor.fact}'"
    module_args = dict(_idrac_connection())
    module_args.update({
        "attributes": dict(BIOS_ATTRIBUTES[vendor]),
        "apply_time": "Immediate",
        "job_wait": True,
        "job_wait_timeout": config.bios_job_timeout,
    })
    return [
        {
            "name": f"Configure BIOS for {label}",
            f"{config.collection}.idrac_bios": module_args,
            "delegate_to": "localhost",
            "register": result_var,
            "when": condition,
        },
        {
            "name": f"Display {vendor.label} BIOS configuration result",
            "ansible.builtin.debug": {
                "msg": [
                    f"BIOS Configuration Status: {{{{ {result_var}.msg | default('N/A') }}}}",
                    f"Job Status: {{{{ {result_var}.job_details.JobState | default('N/A') }}}}",
                ],
            },
            "when": f"{condition} and {result_var} is defined",
        },
    ]


REBOOT_NOTICE = [
    "==========================================",
    "BIOS CONFIGURATION COMPLETE",
    "==========================================",
    "The server has been configured for Confidential Computing.",
    "A system reboot is REQUIRED for changes to take effect.",
    "",
    "Please reboot the server now, then run the verification playbook:",
    f"  ansible-playbook -i {INVENTORY_FILE} {VERIFY_FILE}",
    "==========================================",
]


def idrac_play(config: CocoConfig) -> Dict[str, Any]:
    """Play that writes the BIOS attributes through iDRAC."""
    tasks: List[Dict[str, Any]] = [
        {
            "name": "Display target server and CPU type",
            "ansible.builtin.debug": {
                "msg": "Configuring {{ inventory_hostname }} for {{ cpu_vendor | upper }} Confidential Computing",
            },
        },
        {
            "name": "Get current BIOS configuration",
            f"{config.collection}.idrac_system_info": _idrac_connection(),
            "register": "system_info",
            "delegate_to": "localhost",
        },
        {
            "name": "Display current system information",
            "ansible.builtin.debug": {
                "msg": [
                    "Model: {{ system_info.system_info.Model | default('Unknown') }}",
                    "Service Tag: {{ system_info.system_info.ServiceTag | default('Unknown') }}",
                    "BIOS Version: {{ system_info.system_info.BiosVersion | default('Unknown') }}",
                ],
            },
        },
    ]
    for vendor in (CpuVendor.INTEL, CpuVendor.AMD):
        tasks.extend(_bios_tasks(vendor, config))
    tasks.append({
        "name": "Display reboot instruction",
        "ansible.builtin.debug": {"msg": list(REBOOT_NOTICE)},
    })

    return {
        "name": "Configure Dell BIOS for Confidential Computing",
        "hosts": "dell_servers",
        "gather_facts": False,
        "collections": [config.collection],
        "vars": {"cpu_vendor": "{{ hostvars['localhost']['cpu_vendor'] }}"},
        "tasks": tasks,
    }


def grub_play(config: CocoConfig) -> Dict[str, Any]:
    """Play that appends the vendor kernel parameters to GRUB_CMDLINE_LINUX."""
    kernel_params = {vendor.fact: list(params) for vendor, params in KERNEL_PARAMS.items()}
    return {
        "name": "Configure Kernel Boot Parameters for Confidential Computing",
        "hosts": "localhost",
        "gather_facts": False,
        "become": True,
        "vars": {
            "kernel_params": kernel_params,
            # ansible.builtin.reboot refuses to reboot the control node
            "coco_reboot": "{{ ansible_connection | default('ssh') != 'local' }}",
        },
        "tasks": [
            {
                "name": "Add confidential computing kernel parameters",
                "ansible.builtin.lineinfile": {
                    "path": GRUB_DEFAULTS,
                    "regexp": '^GRUB_CMDLINE_LINUX="((?:(?!{{ item | regex_escape }}).)*?)"$',
                    "line": 'GRUB_CMDLINE_LINUX="\\1 {{ item }}"',
                    "backrefs": True,
                    "backup": True,
                },
                "loop": "{{ kernel_params[cpu_vendor] }}",
                "register": "grub_cmdline",
            },
            {
                "name": "Regenerate GRUB configuration",
                "ansible.builtin.command": f"grub2-mkconfig -o {GRUB_CONFIG}",
                "when": "grub_cmdline is changed",
            },
            {
                "name": "Reboot to apply kernel parameters",
                "ansible.builtin.reboot": {"reboot_timeout": config.reboot_timeout},
                "when": "grub_cmdline is changed and coco_reboot | bool",
            },
            {
                "name": "Display reboot instruction",
                "ansible.builtin.debug": {
                    "msg": [
                        "Kernel parameters updated: {{ kernel_params[cpu_vendor] | join(' ') }}",
                        "Reboot the host, then run:",
                        f"  ansible-playbook -i {INVENTORY_FILE} {VERIFY_FILE}",
                    ],
                },
                "when": "grub_cmdline is changed and not (coco_reboot | bool)",
            },
        ],
    }


def configure_playbook(config: CocoConfig, variant: PlaybookVariant) -> List[Dict[str, Any]]:
    variant = PlaybookVariant(variant)
    if variant is PlaybookVariant.DETECT:
        return [detection_play(report_flags=True)]
    if variant is PlaybookVariant.IDRAC:
        return [detection_play(), idrac_play(config)]
    return [detection_play(), grub_play(config)]


def verify_playbook() -> List[Dict[str, Any]]:
    """Verification play, the same for every variant."""
    intel_block = {
        "name": "Intel TDX verification tasks",
        "when": "is_intel",
        "block": [
            {
                "name": "Check TDX CPU flag",
                "ansible.builtin.shell": "grep -c 'tdx' /proc/cpuinfo || true",
                "register": "tdx_flag",
                "changed_when": False,
            },
            {
                "name": "Check TDX in dmesg",
                "ansible.builtin.shell": "dmesg | grep -i tdx || echo \"No TDX messages found\"",
                "register": "tdx_dmesg",
                "changed_when": False,
            },
            {
                "name": "Display Intel TDX status",
                "ansible.builtin.debug": {
                    "msg": [
                        "TDX CPU flag count: {{ tdx_flag.stdout }}",
                        "TDX dmesg output:",
                        "{{ tdx_dmesg.stdout_lines }}",
                    ],
                },
            },
        ],
    }
    amd_block = {
        "name": "AMD SEV-SNP verification tasks",
        "when": "is_amd",
        "block": [
            {
                "name": "Check SEV CPU flags",
                "ansible.builtin.shell": "grep -E 'sev|sme' /proc/cpuinfo | head -5 || echo \"No SEV flags found\"",
                "register": "sev_flags",
                "changed_when": False,
            },
            {
                "name": "Check SEV in dmesg",
                "ansible.builtin.shell": "dmesg | grep -iE 'sev|ccp' || echo \"No SEV messages found\"",
                "register": "sev_dmesg",
                "changed_when": False,
            },
            {
                "name": "Check for SEV device",
                "ansible.builtin.stat": {"path": "/dev/sev"},
                "register": "sev_device",
            },
            {
                "name": "Display AMD SEV-SNP status",
                "ansible.builtin.debug": {
                    "msg": [
                        "SEV CPU flags:",
                        "{{ sev_flags.stdout_lines }}",
                        "SEV dmesg output:",
                        "{{ sev_dmesg.stdout_lines }}",
                        "SEV device exists: {{ sev_device.stat.exists }}",
                    ],
                },
            },
        ],
    }
    tasks = [
        _gather_cpuinfo_task(),
        _detect_vendor_task(),
        {
            "name": "Display CPU vendor",
            "ansible.builtin.debug": {"msg": f"CPU Vendor: {VENDOR_LABEL_EXPR}"},
        },
        intel_block,
        amd_block,
        {
            "name": "Check IOMMU groups",
            "ansible.builtin.shell": "find /sys/kernel/iommu_groups/ -mindepth 1 -maxdepth 1 2>/dev/null | wc -l",
            "register": "iommu_groups",
            "changed_when": False,
        },
        {
            "name": "Display IOMMU status",
            "ansible.builtin.debug": {"msg": "Number of IOMMU groups: {{ iommu_groups.stdout }}"},
        },
        {
            "name": "Check kernel command line",
            "ansible.builtin.command": "cat /proc/cmdline",
            "register": "cmdline",
            "changed_when": False,
        },
        {
            "name": "Display kernel command line",
            "ansible.builtin.debug": {"msg": "Kernel command line: {{ cmdline.stdout }}"},
        },
    ]
    return [{
        "name": "Verify Confidential Computing Configuration",
        "hosts": "localhost",
        "gather_facts": True,
        "become": True,
        "tasks": tasks,
    }]


# ============================================================================
# Static text files
# ============================================================================

INVENTORY_TEMPLATE = """[localhost]
127.0.0.1 ansible_connection=local

[dell_servers]
# Add your Dell iDRAC IPs here, for example:
# idrac1.example.com ansible_user=root ansible_password=password
"""

VARIANT_DESCRIPTIONS = {
    PlaybookVariant.DETECT: "Detect the CPU vendor and report TDX / SEV CPU flags (no changes are made)",
    PlaybookVariant.IDRAC: "Configure Dell BIOS via iDRAC for confidential computing",
    PlaybookVariant.GRUB: "Add confidential computing kernel parameters to GRUB_CMDLINE_LINUX",
}


def _bullet_attributes(vendor: CpuVendor) -> str:
    return "\n".join(f"- {key}: {value}" for key, value in BIOS_ATTRIBUTES[vendor].items())


def readme_text(config: CocoConfig, variant: PlaybookVariant) -> str:
    variant = PlaybookVariant(variant)
    return f"""# Confidential Computing Ansible Playbooks

## Overview
These playbooks prepare a server for Intel TDX or AMD SEV-SNP confidential computing, then verify the configuration after reboot.

## Files
- `{INVENTORY_FILE}`: Ansible inventory file (configure your Dell iDRAC IPs here)
- `{CONFIGURE_FILE}`: {VARIANT_DESCRIPTIONS[variant]}
- `{VERIFY_FILE}`: Verification playbook to check CoCo status after reboot

## Prerequisites
- Dell iDRAC credentials with BIOS configuration privileges (iDRAC variant)
- Network access to iDRAC interface
- Dell OpenManage Ansible collection installed (already included in the `{config.distrobox_name}` distrobox)

## Usage

### Step 1: Configure {INVENTORY_FILE}
Edit `{INVENTORY_FILE}` and add your Dell server iDRAC IP addresses and credentials:

```ini
[dell_servers]
idrac1.example.com ansible_user=root ansible_password=yourpassword
# Add more servers as needed
```

### Step 2: Configure the server
Run from inside the distrobox:
```bash
ansible-playbook -i {INVENTORY_FILE} {CONFIGURE_FILE}
```

The BIOS job waits up to {config.bios_job_timeout} seconds for completion.

### Step 3: Reboot the Server
```bash
sudo reboot
```

### Step 4: Verify Configuration
```bash
ansible-playbook -i {INVENTORY_FILE} {VERIFY_FILE}
```

## BIOS Settings Configured

### Intel TDX
{_bullet_attributes(CpuVendor.INTEL)}

### AMD SEV-SNP
{_bullet_attributes(CpuVendor.AMD)}

## Kernel Parameters (GRUB variant)
- Intel: `{' '.join(KERNEL_PARAMS[CpuVendor.INTEL])}`
- AMD: `{' '.join(KERNEL_PARAMS[CpuVendor.AMD])}`

## Troubleshooting

### iDRAC Connection Failed
- Verify network connectivity: `ping <idrac-ip>`
- Verify credentials in {INVENTORY_FILE}

### BIOS Job Failed
- Check iDRAC job queue for errors
- Verify BIOS version supports confidential computing

### Configuration Not Applied
- Ensure server was rebooted after configuration
- Run the verification playbook to see detailed status
"""


# ============================================================================
# Writing
# ============================================================================

def write_playbooks(config: CocoConfig, variant: PlaybookVariant = PlaybookVariant.IDRAC) -> Dict[str, Path]:
    """
    Write inventory, playbooks and README into config.playbook_dir.

    Returns:
        Mapping of file name -> written path
    """
    log_info("Creating Ansible playbooks for confidential computing setup...")
    playbook_dir = Path(config.playbook_dir)
    playbook_dir.mkdir(parents=True, exist_ok=True)

    contents = {
        INVENTORY_FILE: INVENTORY_TEMPLATE,
        CONFIGURE_FILE: dump_playbook(configure_playbook(config, variant)),
        VERIFY_FILE: dump_playbook(verify_playbook()),
        README_FILE: readme_text(config, variant),
    }

    written = {}
    for name, text in contents.items():
        path = playbook_dir / name
        path.write_text(text)
        written[name] = path

    log_info(f"Ansible playbooks created in {playbook_dir}")
    return written


def check_syntax(config: CocoConfig, playbook_path: str) -> Tuple[bool, str]:
    """
    Check playbook syntax with ansible-playbook inside the distrobox.

    Returns:
        tuple: (is_valid, error_message)
    """
    inventory = os.path.join(os.path.dirname(playbook_path), INVENTORY_FILE)
    cmd = [
        "distrobox", "enter", config.distrobox_name, "--",
        "ansible-playbook", "-i", inventory, "--syntax-check", playbook_path,
    ]
    log_info(f"Checking playbook syntax: {playbook_path}")
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, timeout=120)
    except subprocess.TimeoutExpired:
        return False, "Syntax check timed out after 120 seconds"
    except FileNotFoundError:
        return False, "distrobox not found. Please ensure it's installed."

    if result.returncode == 0:
        return True, ""

    error_output = []
    if result.stdout and result.stdout.strip():
        error_output.append("=== STDOUT ===")
        error_output.append(result.stdout)
    if result.stderr and result.stderr.strip():
        error_output.append("=== STDERR ===")
        error_output.append(result.stderr)
    return False, "\n".join(error_output).strip()
