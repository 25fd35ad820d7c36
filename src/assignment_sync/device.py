"""
Battery and network conditions read through psutil.
"""

import logging

import psutil

from assignment_sync.models import DeviceConditions
from assignment_sync.models import NetworkType

logger = logging.getLogger(__name__)

# Interface name prefixes, checked in order.
_INTERFACE_HINTS: tuple[tuple[tuple[str, ...], NetworkType], ...] = (
    (("tun", "tap", "wg", "utun", "vpn"), NetworkType.VPN),
    (("wlan", "wlp", "wl", "wifi", "wi-fi", "airport"), NetworkType.WIFI),
    (("wwan", "rmnet", "pdp_ip", "ppp", "cellular"), NetworkType.MOBILE),
    (("eth", "enp", "ens", "eno", "en"), NetworkType.WIRED),
)

# When several links are up the most capable one decides.
_PREFERENCE = (
    NetworkType.WIRED,
    NetworkType.WIFI,
    NetworkType.MOBILE,
    NetworkType.VPN,
    NetworkType.UNKNOWN,
)


def classify_interface(name: str) -> NetworkType:
    lowered = name.lower()
    for prefixes, network in _INTERFACE_HINTS:
        if lowered.startswith(prefixes):
            return network
    return NetworkType.UNKNOWN


def is_loopback(name: str) -> bool:
    lowered = name.lower()
    return lowered == "lo" or lowered.startswith("lo0") or "loopback" in lowered


def detect_network(stats: dict) -> NetworkType:
    """Pick the network type from ``psutil.net_if_stats()`` output."""
    found = {
        classify_interface(name)
        for name, st in stats.items()
        if st.isup and not is_loopback(name)
    }
    if not found:
        return NetworkType.NONE
    for network in _PREFERENCE:
        if network in found:
            return network
    return NetworkType.UNKNOWN


class PsutilDeviceConditions:
    """Device conditions provider for laptops and desktops."""

    def battery(self) -> tuple[int | None, bool | None]:
        try:
            bat = psutil.sensors_battery()
        except (OSError, psutil.Error) as e:
            logger.debug(f"Battery query failed: {e}")
            return None, None
        if bat is None:
            # No battery: a desktop on mains power
            return None, True
        return int(round(bat.percent)), bool(bat.power_plugged)

    def network(self) -> NetworkType:
        try:
            return detect_network(psutil.net_if_stats())
        except (OSError, psutil.Error) as e:
            logger.debug(f"Network type detection failed: {e}")
            return NetworkType.UNKNOWN

    def current(self) -> DeviceConditions:
        level, charging = self.battery()
        conditions = DeviceConditions(
            battery_level=level, is_charging=charging, network=self.network()
        )
        logger.debug(
            f"Device conditions: battery={level} charging={charging} "
            f"network={conditions.network.value}"
        )
        return conditions
