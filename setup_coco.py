#!/usr/bin/env python3
"""
Fedora Distrobox Setup for Confidential Computing Configuration

Creates a Fedora distrobox with Ansible and the Dell OpenManage collection,
writes playbooks that configure Intel TDX or AMD SEV-SNP, and verifies the
result on the host after reboot.

Usage:
    python3 setup_coco.py create    # Create and setup the distrobox (default)
    python3 setup_coco.py verify    # Verify confidential computing is enabled
    python3 setup_coco.py bios      # Configure BIOS directly over iDRAC Redfish
"""

import argparse
import os
import sys
from typing import List, Optional

from coco_config import CocoConfig, load_config, load_idrac_credentials
from coco_detect import classify_vendor, require_supported_vendor
from coco_errors import CocoError, ConfigError
from coco_log import log_error, log_info, log_warn, print_banner
from coco_playbooks import CONFIGURE_FILE, VERIFY_FILE, PlaybookVariant, check_syntax, write_playbooks
from coco_provision import create_distrobox, display_usage, setup_ansible
from coco_verify import HostSources, verify_coco
from idrac_redfish import APPLY_TIMES, RedfishBiosClient, apply_bios_settings


COMMANDS = {
    "create": "Create and setup the distrobox (default)",
    "verify": "Verify confidential computing is enabled",
    "bios": "Configure BIOS over iDRAC Redfish for the local CPU vendor",
}


def print_usage(prog: str) -> None:
    print(f"Usage: {prog} {{{'|'.join(COMMANDS)}}}")
    for name, help_text in COMMANDS.items():
        print(f"  {name:<7} - {help_text}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description='Set up Ansible tooling and verify Intel TDX / AMD SEV-SNP confidential computing',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Create the distrobox and write the iDRAC playbooks
  python3 setup_coco.py create

  # Write GRUB kernel-parameter playbooks only, no distrobox
  python3 setup_coco.py create --variant grub --skip-provision

  # Verify after reboot
  python3 setup_coco.py verify

  # Configure the BIOS directly (IDRAC_PASSWORD read from the environment / .env)
  python3 setup_coco.py bios --idrac-host idrac1.example.com
"""
    )

    parser.add_argument(
        'command',
        nargs='?',
        default='create',
        help=f"One of: {', '.join(COMMANDS)} (default: create)"
    )

    parser.add_argument(
        '--variant',
        type=str,
        choices=[v.value for v in PlaybookVariant],
        default=PlaybookVariant.IDRAC.value,
        help='What configure_coco.yaml does: detect only, iDRAC BIOS, or GRUB kernel parameters (default: idrac)'
    )

    parser.add_argument(
        '--playbook-dir', '-d',
        type=str,
        default=None,
        help='Directory for the generated playbooks (default: ~/ansible-coco)'
    )

    parser.add_argument(
        '--name', '-n',
        type=str,
        default=None,
        help='Distrobox name (default: fedora-coco-ansible)'
    )

    parser.add_argument(
        '--skip-provision',
        action='store_true',
        help='Only write the playbooks, do not create the distrobox'
    )

    parser.add_argument(
        '--syntax-check',
        action='store_true',
        help='Run ansible-playbook --syntax-check on the generated playbooks'
    )

    parser.add_argument(
        '--idrac-host',
        type=str,
        default=None,
        help='iDRAC address for the bios command (default: $IDRAC_HOST)'
    )

    parser.add_argument(
        '--idrac-user',
        type=str,
        default=None,
        help='iDRAC user for the bios command (default: $IDRAC_USER or root)'
    )

    parser.add_argument(
        '--apply-time',
        type=str,
        choices=APPLY_TIMES,
        default='Immediate',
        help='Reboot now and wait for the BIOS job, or leave it for the next reboot (default: Immediate)'
    )

    return parser


# ============================================================================
# Commands
# ============================================================================

def run_create(config: CocoConfig, args: argparse.Namespace, prog: str) -> int:
    log_info(f"Starting Fedora {config.fedora_version} distrobox setup for Confidential Computing...")

    if args.skip_provision:
        log_warn("Skipping distrobox creation (--skip-provision)")
    else:
        create_distrobox(config)
        setup_ansible(config)

    written = write_playbooks(config, PlaybookVariant(args.variant))

    if args.syntax_check:
        for name in (CONFIGURE_FILE, VERIFY_FILE):
            ok, message = check_syntax(config, str(written[name]))
            if ok:
                log_info(f"✓ Syntax check passed: {name}")
            else:
                log_error(f"Syntax check failed: {name}")
                print(message)
                return 1

    display_usage(config, prog)
    return 0


def run_verify(config: CocoConfig, args: argparse.Namespace, prog: str) -> int:
    return verify_coco(HostSources())


def run_bios(config: CocoConfig, args: argparse.Namespace, prog: str) -> int:
    credentials = load_idrac_credentials(host=args.idrac_host, user=args.idrac_user)
    if not credentials.host:
        raise ConfigError("No iDRAC host given (use --idrac-host or IDRAC_HOST)")
    if not credentials.password:
        raise ConfigError("IDRAC_PASSWORD is not set")

    sources = HostSources()
    vendor = require_supported_vendor(classify_vendor(sources.read_cpuinfo()))
    log_info(f"Detected CPU: {vendor.label}")

    print_banner(f"Configuring {credentials.host} for {vendor.label} Confidential Computing")
    client = RedfishBiosClient(credentials.host, credentials.user, credentials.password)
    job = apply_bios_settings(
        client,
        vendor,
        timeout=config.bios_job_timeout,
        interval=config.bios_poll_interval,
        apply_time=args.apply_time,
    )
    if job is not None:
        log_info(f"Job Status: {job.get('JobState', 'N/A')}")
        log_info(f"After the server is back, run: {prog} verify")
    return 0


COMMAND_HANDLERS = {
    "create": run_create,
    "verify": run_verify,
    "bios": run_bios,
}


def main(argv: Optional[List[str]] = None) -> int:
    """Main execution function."""
    parser = build_parser()
    args = parser.parse_args(argv)
    prog = os.path.basename(sys.argv[0]) or "setup_coco.py"

    handler = COMMAND_HANDLERS.get(args.command)
    if handler is None:
        print_usage(prog)
        return 1

    try:
        config = load_config(playbook_dir=args.playbook_dir, distrobox_name=args.name)
        return handler(config, args, prog)
    except KeyboardInterrupt:
        print("")
        log_warn("Interrupted by user")
        return 1
    except CocoError as e:
        log_error(str(e))
        output = getattr(e, 'output', '')
        if output:
            print(output, file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
