#!/usr/bin/env python3
"""
Provision the Fedora distrobox that runs Ansible and the Dell OpenManage
collection.

Every step shells out to distrobox. Any failure raises CommandError and the
run stops there; nothing already done is rolled back.
"""

import subprocess
from typing import List, Optional

from coco_config import CocoConfig
from coco_errors import CommandError
from coco_log import log_info, log_warn


def run_cmd(cmd: List[str], capture: bool = True, timeout: Optional[int] = None) -> str:
    """
    Run a command and fail loudly.

    Args:
        cmd: Command and arguments
        capture: Capture stdout/stderr (False streams them to the terminal)
        timeout: Seconds before the command is killed

    Returns:
        Captured stdout ("" when not capturing)
    """
    try:
        result = subprocess.run(
            cmd,
            capture_output=capture,
            text=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise CommandError(cmd, None)
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, -1, f"Timed out after {e.timeout} seconds")

    if result.returncode != 0:
        output = ""
        if capture:
            output = "\n".join(part for part in (result.stdout, result.stderr) if part and part.strip())
        raise CommandError(cmd, result.returncode, output.strip())

    return (result.stdout or "") if capture else ""


# ============================================================================
# Distrobox
# ============================================================================

def distrobox_names(listing: str) -> List[str]:
    """
    Parse the NAME column of `distrobox list`.

    Typical output:
      ID           | NAME                 | STATUS             | IMAGE
      abc123def456 | fedora-coco-ansible  | Up 2 hours         | registry.fedoraproject.org/fedora:43
    """
    names = []
    for line in listing.splitlines():
        columns = [column.strip() for column in line.split("|")]
        if len(columns) < 2 or columns[0].upper() == "ID":
            continue
        if columns[1]:
            names.append(columns[1])
    return names


def distrobox_exists(config: CocoConfig, runner=run_cmd) -> bool:
    return config.distrobox_name in distrobox_names(runner(["distrobox", "list"]))


def create_distrobox(config: CocoConfig, runner=run_cmd) -> None:
    """Create the distrobox, replacing an existing one of the same name."""
    log_info(f"Creating Fedora {config.fedora_version} distrobox: {config.distrobox_name}")

    if distrobox_exists(config, runner):
        log_warn(f"Distrobox {config.distrobox_name} already exists. Removing it first...")
        runner(["distrobox", "rm", "-f", config.distrobox_name], capture=False)

    log_info("Creating distrobox container...")
    runner(
        [
            "distrobox", "create",
            "--name", config.distrobox_name,
            "--image", config.image,
            "--init",
            "--yes",
            "--additional-packages", " ".join(config.additional_packages),
        ],
        capture=False,
    )
    log_info("Distrobox created successfully")


def ansible_setup_script(config: CocoConfig) -> str:
    """Shell script executed inside the distrobox to install Ansible bits."""
    return f"""
set -euo pipefail

echo "[INFO] Updating system packages..."
sudo dnf update -y

echo "[INFO] Installing additional Python dependencies..."
sudo dnf install -y python3-netaddr python3-jmespath

echo "[INFO] Installing Dell OpenManage Python SDK..."
pip3 install --user omsdk --upgrade

echo "[INFO] Installing Dell OpenManage Ansible Collection..."
ansible-galaxy collection install {config.collection} --upgrade

echo "[INFO] Verifying Ansible installation..."
ansible --version

echo "[INFO] Verifying Dell OpenManage collection..."
ansible-galaxy collection list | grep {config.collection} || echo "Collection may need manual verification"

echo "[INFO] Setup complete!"
"""


def setup_ansible(config: CocoConfig, runner=run_cmd) -> None:
    log_info("Setting up Ansible and Dell iDRAC modules in distrobox...")
    runner(
        ["distrobox", "enter", config.distrobox_name, "--", "bash", "-c", ansible_setup_script(config)],
        capture=False,
    )
    log_info("Ansible and Dell iDRAC modules installed successfully")


def display_usage(config: CocoConfig, prog: str = "setup-coco") -> None:
    playbook_dir = config.playbook_dir
    log_info("Setup complete! Here's how to use your new distrobox:")
    print("")
    print("1. Configure iDRAC credentials:")
    print(f"   Edit {playbook_dir}/inventory.ini")
    print("   Add your Dell iDRAC IP addresses and credentials")
    print("")
    print("2. Enter the distrobox:")
    print(f"   distrobox enter {config.distrobox_name}")
    print("")
    print("3. Configure BIOS for confidential computing:")
    print(f"   cd {playbook_dir}")
    print("   ansible-playbook -i inventory.ini configure_coco.yaml")
    print("")
    print("4. Reboot the server:")
    print("   sudo reboot")
    print("")
    print("5. After reboot, verify confidential computing:")
    print(f"   {prog} verify")
    print("   OR: ansible-playbook -i inventory.ini verify_coco.yaml")
    print("")
