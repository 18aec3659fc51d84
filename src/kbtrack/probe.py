"""
Bluetooth LE battery probe.

Reads the standard Battery Level characteristic from the keyboard and
corroborates connectivity from the scanner and the host Bluetooth stack
when the read itself fails. Failures come back as classified data, never
as exceptions.
"""

import asyncio
import logging
import shutil
import subprocess
import time
from typing import Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakDeviceNotFoundError, BleakError

from .config import TrackerConfig
from .models import (
    ConnectivityAssessment,
    ConnectivityIssue,
    ConnectivitySource,
    ProbeResult,
)

logger = logging.getLogger(__name__)

BATTERY_LEVEL_UUID = "00002a19-0000-1000-8000-00805f9b34fb"

# Confidence contributed by each corroborating source without a battery read
CORROBORATION_WEIGHT = 0.35
CONNECTED_CONFIDENCE = 0.5

BLUETOOTHCTL_TIMEOUT = 5

# Shares of connection_timeout: the scan must give up before the read does,
# and the host check runs in what is left after the read
SCAN_SHARE = 0.6
READ_SHARE = 0.8

# Substrings of Bluetooth stack error messages, checked in order
_ISSUE_PATTERNS = (
    (ConnectivityIssue.UNAUTHORIZED, ("not authorized", "unauthorized", "permission", "access denied")),
    (ConnectivityIssue.POWERED_OFF, ("powered off", "not powered", "turned off", "poweredoff")),
    (ConnectivityIssue.UNAVAILABLE, ("no bluetooth adapter", "not available", "unavailable", "not supported")),
    (ConnectivityIssue.TIMEOUT, ("timeout", "timed out")),
    (ConnectivityIssue.PERIPHERAL_NOT_FOUND, ("not found", "no such device")),
)


def classify_error(error: BaseException) -> ConnectivityIssue:
    """Map a probe exception onto the connectivity issue taxonomy."""
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return ConnectivityIssue.TIMEOUT
    if isinstance(error, BleakDeviceNotFoundError):
        return ConnectivityIssue.PERIPHERAL_NOT_FOUND
    if isinstance(error, PermissionError):
        return ConnectivityIssue.UNAUTHORIZED

    message = str(error).lower()
    for issue, patterns in _ISSUE_PATTERNS:
        if any(p in message for p in patterns):
            return issue
    return ConnectivityIssue.UNKNOWN


def assess(sources, issue=None) -> ConnectivityAssessment:
    """
    Combine corroborating sources into a connectivity assessment.

    A battery read (primary) is conclusive. Otherwise every other source
    adds CORROBORATION_WEIGHT, so both together clear the accrual threshold
    and either alone does not.
    """
    sources = frozenset(sources)
    if ConnectivitySource.PRIMARY in sources:
        confidence = 1.0
    else:
        confidence = min(1.0, CORROBORATION_WEIGHT * len(sources))
    return ConnectivityAssessment(
        is_connected=confidence >= CONNECTED_CONFIDENCE,
        confidence=confidence,
        sources=sources,
        issue=None if ConnectivitySource.PRIMARY in sources else issue,
    )


def host_reports_connected(address: Optional[str], timeout: float = BLUETOOTHCTL_TIMEOUT) -> bool:
    """Ask bluetoothctl whether the host sees the device as connected."""
    if not address or timeout <= 0 or shutil.which("bluetoothctl") is None:
        return False
    try:
        result = subprocess.run(
            ["bluetoothctl", "info", address],
            timeout=timeout,
            capture_output=True,
            text=True,
        )
    except (OSError, subprocess.SubprocessError) as e:
        logger.debug("bluetoothctl failed: %s", e)
        return False
    return "Connected: yes" in result.stdout


class BleakProbe:
    """
    Probe the keyboard battery over Bluetooth LE.

    One call never takes longer than ``connection_timeout``: scanning gets
    SCAN_SHARE of it, scan plus connect plus read get READ_SHARE, and the
    bluetoothctl check only runs in the remainder.
    """

    def __init__(self, config: Optional[TrackerConfig] = None):
        self.config = config or TrackerConfig()

    def __call__(self) -> ProbeResult:
        return self.probe()

    def probe(self) -> ProbeResult:
        """Run one bounded probe and return its resolved result."""
        budget = self.config.connection_timeout
        started = time.monotonic()
        sources = set()
        try:
            battery = asyncio.run(
                asyncio.wait_for(self._read_battery(sources), timeout=budget * READ_SHARE)
            )
        except Exception as e:
            # Backends raise more than BleakError (dbus EOFError, RuntimeError);
            # every failure is reported as data
            issue = classify_error(e)
            logger.info("Battery read failed (%s): %s", issue.value, str(e) or type(e).__name__)
            if issue is ConnectivityIssue.UNKNOWN:
                logger.debug("Unclassified probe error", exc_info=True)
            remaining = budget - (time.monotonic() - started)
            if host_reports_connected(
                self.config.device_address, timeout=min(BLUETOOTHCTL_TIMEOUT, remaining)
            ):
                sources.add(ConnectivitySource.TERTIARY)
            return ProbeResult(battery=None, connectivity=assess(sources, issue))

        sources.add(ConnectivitySource.PRIMARY)
        logger.info("Battery level: %d%%", battery)
        return ProbeResult(battery=battery, connectivity=assess(sources))

    def _matches(self, device, advertisement_data=None) -> bool:
        name = device.name or ""
        if advertisement_data is not None and not name:
            name = advertisement_data.local_name or ""
        return any(fragment in name for fragment in self.config.device_names)

    async def _find_device(self):
        timeout = self.config.connection_timeout * SCAN_SHARE
        address = self.config.device_address
        if address:
            device = await BleakScanner.find_device_by_address(address, timeout=timeout)
        else:
            device = await BleakScanner.find_device_by_filter(self._matches, timeout=timeout)
        if device is None:
            raise BleakDeviceNotFoundError(address or "/".join(self.config.device_names))
        return device

    async def _read_battery(self, sources: set) -> int:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.config.connection_timeout * READ_SHARE

        device = await self._find_device()
        sources.add(ConnectivitySource.SECONDARY)
        logger.debug("Found %s (%s)", device.name or "unknown", device.address)

        connect_timeout = max(0.1, deadline - loop.time())
        async with BleakClient(device, timeout=connect_timeout) as client:
            data = await client.read_gatt_char(BATTERY_LEVEL_UUID)

        if not data:
            raise BleakError("Empty battery level value")
        return max(0, min(100, int(data[0])))
