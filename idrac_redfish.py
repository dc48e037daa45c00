#!/usr/bin/env python3
"""
Dell iDRAC Redfish client for BIOS attribute configuration.

Same job as the dellemc.openmanage.idrac_bios Ansible module used by the
configure playbook, without needing the distrobox:

1. Read current BIOS attributes
2. PATCH the pending attribute changes
3. Create a BIOS configuration job
4. Reboot (apply_time=Immediate) and wait for the job to finish
"""

import time
from typing import Any, Callable, Dict, Optional

import requests
import urllib3

from coco_detect import CpuVendor, require_supported_vendor
from coco_errors import JobTimeoutError, RedfishError
from coco_log import log_info, log_warn
from coco_playbooks import BIOS_ATTRIBUTES


SYSTEM_URI = "/redfish/v1/Systems/System.Embedded.1"
BIOS_URI = f"{SYSTEM_URI}/Bios"
BIOS_SETTINGS_URI = f"{BIOS_URI}/Settings"
RESET_URI = f"{SYSTEM_URI}/Actions/ComputerSystem.Reset"
JOBS_URI = "/redfish/v1/Managers/iDRAC.Embedded.1/Jobs"

JOB_TERMINAL_STATES = ("Completed", "Failed", "CompletedWithErrors")
APPLY_TIMES = ("Immediate", "OnReset")


# ============================================================================
# Polling
# ============================================================================

def poll_until(
    poll: Callable[[], Any],
    is_done: Callable[[Any], bool],
    timeout: float,
    interval: float,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """
    Call poll() every `interval` seconds until is_done(result) or `timeout`.

    Returns:
        The first result for which is_done() is true

    Raises:
        JobTimeoutError: deadline passed; carries the last polled result
    """
    deadline = clock() + timeout
    while True:
        result = poll()
        if is_done(result):
            return result
        remaining = deadline - clock()
        if remaining <= 0:
            raise JobTimeoutError(timeout, result)
        sleep(min(interval, remaining))


# ============================================================================
# Client
# ============================================================================

class RedfishBiosClient:
    """Minimal Redfish client for the iDRAC BIOS and job endpoints."""

    def __init__(
        self,
        host: str,
        user: str,
        password: str,
        verify_ssl: bool = False,
        timeout: int = 60,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = host if host.startswith("http") else f"https://{host}"
        self.timeout = timeout
        self.session = session or requests.Session()
        self.session.auth = (user, password)
        self.session.verify = verify_ssl
        self.session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json",
        })
        if not verify_ssl:
            urllib3.disable_warnings(urllib3.exceptions.InsecureRequestWarning)

    def _request(self, method: str, uri: str, **kwargs) -> requests.Response:
        url = f"{self.base_url}{uri}"
        try:
            response = self.session.request(method, url, timeout=self.timeout, **kwargs)
        except requests.RequestException as e:
            raise RedfishError(f"{method} {url} failed: {e}")
        if response.status_code >= 400:
            raise RedfishError(
                f"{method} {uri} failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )
        return response

    def get_bios_attributes(self) -> Dict[str, Any]:
        return self._request("GET", BIOS_URI).json().get("Attributes", {})

    def set_bios_attributes(self, attributes: Dict[str, Any]) -> None:
        self._request("PATCH", BIOS_SETTINGS_URI, json={"Attributes": attributes})

    def create_bios_job(self) -> str:
        """Queue a BIOS configuration job and return its id (e.g. JID_123)."""
        response = self._request("POST", JOBS_URI, json={"TargetSettingsURI": BIOS_SETTINGS_URI})
        location = response.headers.get("Location", "")
        job_id = location.rstrip("/").split("/")[-1]
        if not job_id.startswith("JID_"):
            raise RedfishError(f"No job id in response (Location: {location!r})")
        return job_id

    def get_job(self, job_id: str) -> Dict[str, Any]:
        return self._request("GET", f"{JOBS_URI}/{job_id}").json()

    def reset_system(self, reset_type: str = "GracefulRestart") -> None:
        self._request("POST", RESET_URI, json={"ResetType": reset_type})

    def wait_for_job(self, job_id: str, timeout: float, interval: float, **poll_kwargs) -> Dict[str, Any]:
        def poll():
            job = self.get_job(job_id)
            log_info(f"Job {job_id}: {job.get('JobState', 'Unknown')} "
                     f"({job.get('PercentComplete', 0)}%) {job.get('Message', '')}".rstrip())
            return job

        return poll_until(
            poll,
            lambda job: job.get("JobState") in JOB_TERMINAL_STATES,
            timeout=timeout,
            interval=interval,
            **poll_kwargs,
        )


def pending_changes(current: Dict[str, Any], desired: Dict[str, Any]) -> Dict[str, Any]:
    """Attributes whose current value differs from the desired one."""
    return {
        key: value for key, value in desired.items()
        if str(current.get(key)) != str(value)
    }


def apply_bios_settings(
    client: RedfishBiosClient,
    vendor: CpuVendor,
    timeout: float,
    interval: float,
    apply_time: str = "Immediate",
    **poll_kwargs,
) -> Optional[Dict[str, Any]]:
    """
    Write the confidential computing BIOS attributes for `vendor`.

    Returns:
        The final job dict, or None when the BIOS already matches
    """
    vendor = require_supported_vendor(vendor)
    if apply_time not in APPLY_TIMES:
        raise ValueError(f"apply_time must be one of {APPLY_TIMES}, got {apply_time!r}")

    desired = BIOS_ATTRIBUTES[vendor]
    current = client.get_bios_attributes()
    for key in desired:
        if key not in current:
            log_warn(f"BIOS attribute {key} not reported by this system")

    changes = pending_changes(current, desired)
    if not changes:
        log_info("BIOS already configured, no changes needed")
        return None

    for key, value in changes.items():
        log_info(f"  {key}: {current.get(key, 'N/A')} -> {value}")
    client.set_bios_attributes(changes)
    job_id = client.create_bios_job()
    log_info(f"Created BIOS configuration job {job_id}")

    if apply_time != "Immediate":
        log_info("Job scheduled; it runs on the next server reboot")
        return client.get_job(job_id)

    client.reset_system()
    log_info(f"Rebooting server, waiting up to {timeout:g}s for job completion...")
    job = client.wait_for_job(job_id, timeout=timeout, interval=interval, **poll_kwargs)
    if job.get("JobState") != "Completed":
        raise RedfishError(f"BIOS job {job_id} ended in state {job.get('JobState')}: {job.get('Message', '')}")
    return job
