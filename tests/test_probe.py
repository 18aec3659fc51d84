import asyncio

import pytest
from bleak.exc import BleakDeviceNotFoundError, BleakError

from kbtrack import probe as probe_module
from kbtrack.config import TrackerConfig
from kbtrack.models import ConnectivityIssue, ConnectivitySource
from kbtrack.probe import BleakProbe, assess, classify_error


@pytest.mark.parametrize(
    "error, expected",
    [
        (asyncio.TimeoutError(), ConnectivityIssue.TIMEOUT),
        (BleakDeviceNotFoundError("AA:BB"), ConnectivityIssue.PERIPHERAL_NOT_FOUND),
        (PermissionError("denied"), ConnectivityIssue.UNAUTHORIZED),
        (BleakError("org.bluez.Error.NotReady: Resource Not Ready, adapter powered off"), ConnectivityIssue.POWERED_OFF),
        (BleakError("No Bluetooth adapters found."), ConnectivityIssue.UNAVAILABLE),
        (BleakError("Bluetooth adapter not available"), ConnectivityIssue.UNAVAILABLE),
        (OSError("Operation timed out"), ConnectivityIssue.TIMEOUT),
        (BleakError("something odd"), ConnectivityIssue.UNKNOWN),
    ],
)
def test_classify_error(error, expected):
    assert classify_error(error) is expected


def test_battery_read_is_conclusive():
    assessment = assess({ConnectivitySource.PRIMARY, ConnectivitySource.SECONDARY})

    assert assessment.is_connected
    assert assessment.confidence == 1.0
    assert assessment.issue is None


def test_corroborating_sources_add_up():
    one = assess({ConnectivitySource.SECONDARY}, ConnectivityIssue.TIMEOUT)
    two = assess({ConnectivitySource.SECONDARY, ConnectivitySource.TERTIARY}, ConnectivityIssue.TIMEOUT)

    assert not one.is_connected
    assert one.confidence == pytest.approx(0.35)
    assert two.is_connected
    assert two.confidence == pytest.approx(0.7)
    assert two.issue is ConnectivityIssue.TIMEOUT


def test_nothing_corroborates():
    assessment = assess(set(), ConnectivityIssue.PERIPHERAL_NOT_FOUND)

    assert assessment.confidence == 0.0
    assert not assessment.is_connected


@pytest.fixture
def host_disconnected(monkeypatch):
    monkeypatch.setattr(probe_module, "host_reports_connected", lambda address, timeout=None: False)


def test_probe_success(monkeypatch, host_disconnected):
    async def read_battery(self, sources):
        sources.add(ConnectivitySource.SECONDARY)
        return 77

    monkeypatch.setattr(BleakProbe, "_read_battery", read_battery)

    result = BleakProbe(TrackerConfig())()

    assert result.battery == 77
    assert result.connectivity.confidence == 1.0
    assert result.connectivity.sources == {ConnectivitySource.PRIMARY, ConnectivitySource.SECONDARY}


def test_probe_read_failure_after_discovery(monkeypatch):
    async def read_battery(self, sources):
        sources.add(ConnectivitySource.SECONDARY)
        raise BleakError("Characteristic read timed out")

    monkeypatch.setattr(BleakProbe, "_read_battery", read_battery)
    monkeypatch.setattr(probe_module, "host_reports_connected", lambda address, timeout=None: True)

    result = BleakProbe(TrackerConfig(device_address="AA:BB"))()

    assert result.battery is None
    assert result.connectivity.issue is ConnectivityIssue.TIMEOUT
    assert result.connectivity.sources == {ConnectivitySource.SECONDARY, ConnectivitySource.TERTIARY}
    assert result.connectivity.is_connected


def test_probe_device_not_found(monkeypatch, host_disconnected):
    async def read_battery(self, sources):
        raise BleakDeviceNotFoundError("AA:BB")

    monkeypatch.setattr(BleakProbe, "_read_battery", read_battery)

    result = BleakProbe()()

    assert result.battery is None
    assert result.connectivity.issue is ConnectivityIssue.PERIPHERAL_NOT_FOUND
    assert result.connectivity.confidence == 0.0


def test_probe_is_bounded_by_connection_timeout(monkeypatch, host_disconnected):
    async def read_battery(self, sources):
        await asyncio.sleep(5)
        return 50

    monkeypatch.setattr(BleakProbe, "_read_battery", read_battery)

    result = BleakProbe(TrackerConfig(connection_timeout=0.05))()

    assert result.battery is None
    assert result.connectivity.issue is ConnectivityIssue.TIMEOUT


def test_name_matching():
    class Device:
        def __init__(self, name):
            self.name = name

    probe = BleakProbe(TrackerConfig(device_names=("NuPhy", "Air75")))

    assert probe._matches(Device("NuPhy Air75 V2"))
    assert not probe._matches(Device("Magic Mouse"))
    assert not probe._matches(Device(None))


def test_absent_device_is_reported_before_the_deadline(monkeypatch, host_disconnected):
    async def find_device_by_address(address, timeout=10.0, **kwargs):
        # bleak scans for the whole timeout before giving up
        await asyncio.sleep(timeout)
        return None

    monkeypatch.setattr(
        probe_module.BleakScanner, "find_device_by_address", staticmethod(find_device_by_address)
    )

    result = BleakProbe(TrackerConfig(device_address="AA:BB", connection_timeout=1.0))()

    assert result.battery is None
    assert result.connectivity.issue is ConnectivityIssue.PERIPHERAL_NOT_FOUND


def test_absent_device_by_name_is_not_found(monkeypatch, host_disconnected):
    async def find_device_by_filter(filterfunc, timeout=10.0, **kwargs):
        await asyncio.sleep(timeout)
        return None

    monkeypatch.setattr(
        probe_module.BleakScanner, "find_device_by_filter", staticmethod(find_device_by_filter)
    )

    result = BleakProbe(TrackerConfig(connection_timeout=1.0))()

    assert result.connectivity.issue is ConnectivityIssue.PERIPHERAL_NOT_FOUND


@pytest.mark.parametrize(
    "error", [EOFError("dbus connection closed"), RuntimeError("backend gone"), KeyError("handle")]
)
def test_unexpected_backend_errors_are_unknown(monkeypatch, host_disconnected, error):
    async def read_battery(self, sources):
        raise error

    monkeypatch.setattr(BleakProbe, "_read_battery", read_battery)

    result = BleakProbe(TrackerConfig())()

    assert result.battery is None
    assert result.connectivity.issue is ConnectivityIssue.UNKNOWN
    assert not result.connectivity.is_connected


def test_host_check_runs_inside_the_timeout(monkeypatch):
    async def read_battery(self, sources):
        await asyncio.sleep(5)

    timeouts = []

    def host_reports_connected(address, timeout=None):
        timeouts.append(timeout)
        return False

    monkeypatch.setattr(BleakProbe, "_read_battery", read_battery)
    monkeypatch.setattr(probe_module, "host_reports_connected", host_reports_connected)

    BleakProbe(TrackerConfig(device_address="AA:BB", connection_timeout=0.5))()

    (timeout,) = timeouts
    assert timeout <= 0.1 + 1e-6


def test_host_check_skipped_without_time_left():
    assert not probe_module.host_reports_connected("AA:BB", timeout=0)
