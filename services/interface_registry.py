import os
import socket
import logging
import ipaddress
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime
from typing import Dict, List, Optional, Tuple

import psutil

import config
from models.network_models import Interface, InterfaceKind, InterfaceSnapshot, InterfaceStats, DesiredConfig
from services.file_service import UnitStore
from utils.config_parser import parse_network_unit

logger = logging.getLogger(__name__)

COUNTER_FIELDS = {
    'rx_bytes': 'bytes_recv',
    'tx_bytes': 'bytes_sent',
    'rx_packets': 'packets_recv',
    'tx_packets': 'packets_sent',
    'rx_errors': 'errin',
    'tx_errors': 'errout',
    'rx_dropped': 'dropin',
    'tx_dropped': 'dropout',
}


def _read_sysfs(path: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except (OSError, IOError):
        return None


def _prefix_length(netmask: Optional[str]) -> Optional[int]:
    if not netmask:
        return None
    try:
        return bin(int(ipaddress.ip_address(netmask))).count('1')
    except ValueError:
        return None


class InterfaceRegistry:
    """
    Live view of the kernel's interfaces.

    `snapshot()` never blocks on the kernel: it returns the last snapshot built by
    `refresh()`, which runs the query in a worker with a bounded timeout. A failed
    or slow query keeps the previous snapshot and marks it stale.
    """

    def __init__(self, unit_store: UnitStore, sys_path: Optional[str] = None,
                 poll_interval: Optional[float] = None, query_timeout: Optional[float] = None):
        self.unit_store = unit_store
        self.sys_path = sys_path or config.NETWORK_INTERFACES_SYS_PATH
        self.poll_interval = poll_interval or config.REGISTRY_POLL_INTERVAL
        self.query_timeout = query_timeout or config.REGISTRY_QUERY_TIMEOUT

        self._lock = threading.Lock()
        self._snapshot = InterfaceSnapshot(stale=True, error="not refreshed yet")
        self._last_raw: Dict[str, Dict[str, int]] = {}
        self._offsets: Dict[str, Dict[str, int]] = {}

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="registry-query")
        self._pending = None
        self._stop_event = threading.Event()
        self._poll_thread = None

    def snapshot(self) -> InterfaceSnapshot:
        with self._lock:
            return self._snapshot

    def get(self, name: str) -> Optional[Interface]:
        return self.snapshot().get(name)

    def refresh(self) -> InterfaceSnapshot:
        """
        Query the kernel and replace the snapshot.

        Returns:
            InterfaceSnapshot: The new snapshot, or the previous one marked stale
                when the query failed or exceeded the timeout
        """
        if self._pending is None or self._pending.done():
            self._pending = self._executor.submit(self._query)
        try:
            interfaces = self._pending.result(timeout=self.query_timeout)
        except FutureTimeout:
            return self._mark_stale(f"interface query exceeded {self.query_timeout}s")
        except Exception as e:
            logger.exception("Interface query failed")
            return self._mark_stale(str(e))

        snapshot = InterfaceSnapshot(interfaces=tuple(interfaces), taken_at=datetime.now())
        with self._lock:
            self._snapshot = snapshot
        return snapshot

    def _mark_stale(self, error: str) -> InterfaceSnapshot:
        logger.warning(f"Using stale interface snapshot: {error}")
        with self._lock:
            previous = self._snapshot
            self._snapshot = InterfaceSnapshot(interfaces=previous.interfaces, taken_at=previous.taken_at,
                                               stale=True, error=error)
            return self._snapshot

    def start(self) -> None:
        if self._poll_thread is not None and self._poll_thread.is_alive():
            return
        self._stop_event.clear()
        self.refresh()
        self._poll_thread = threading.Thread(target=self._poll_loop, name="registry-poll", daemon=True)
        self._poll_thread.start()
        logger.info(f"Interface registry polling every {self.poll_interval}s")

    def stop(self) -> None:
        self._stop_event.set()
        if self._poll_thread is not None:
            self._poll_thread.join(timeout=self.query_timeout + 1)
            self._poll_thread = None
        self._executor.shutdown(wait=False)

    def _poll_loop(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            self.refresh()

    # kernel queries, run on the worker thread

    def _query(self) -> List[Interface]:
        stats = psutil.net_if_stats()
        addrs = psutil.net_if_addrs()
        counters = psutil.net_io_counters(pernic=True)
        persisted = self._persisted_configs()

        interfaces = []
        for name in sorted(set(stats) | set(addrs)):
            if name in config.EXCLUDED_INTERFACES:
                continue
            nic_stats = stats.get(name)
            ipv4, ipv6, mac = self._addresses(addrs.get(name, []))
            config_file, desired = persisted.get(name, (None, None))
            interfaces.append(Interface(
                name=name,
                kind=self.detect_kind(name),
                admin_up=bool(nic_stats and nic_stats.isup),
                oper_state=self.get_interface_link_status(name),
                mac_address=mac,
                mtu=nic_stats.mtu if nic_stats else None,
                speed_mbps=nic_stats.speed if nic_stats and nic_stats.speed > 0 else None,
                ipv4_addresses=ipv4,
                ipv6_addresses=ipv6,
                stats=self._monotonic_stats(name, counters.get(name)),
                config_file=config_file,
                desired=desired,
            ))
        return interfaces

    @staticmethod
    def _addresses(entries) -> Tuple[List[str], List[str], Optional[str]]:
        ipv4, ipv6, mac = [], [], None
        for entry in entries:
            if entry.family == socket.AF_INET:
                prefix = _prefix_length(entry.netmask)
                ipv4.append(f"{entry.address}/{prefix}" if prefix is not None else entry.address)
            elif entry.family == socket.AF_INET6:
                address = entry.address.split('%', 1)[0]
                if ipaddress.ip_address(address).is_link_local:
                    continue
                prefix = _prefix_length(entry.netmask)
                ipv6.append(f"{address}/{prefix}" if prefix is not None else address)
            elif entry.family == psutil.AF_LINK:
                mac = entry.address
        return ipv4, ipv6, mac

    def _monotonic_stats(self, name: str, raw) -> InterfaceStats:
        """Fold counter resets into a running offset so exposed values never decrease."""
        if raw is None:
            return InterfaceStats()
        last = self._last_raw.setdefault(name, {})
        offsets = self._offsets.setdefault(name, {})
        values = {}
        for field, attr in COUNTER_FIELDS.items():
            current = getattr(raw, attr)
            if current < last.get(field, 0):
                offsets[field] = offsets.get(field, 0) + last[field]
            last[field] = current
            values[field] = current + offsets.get(field, 0)
        return InterfaceStats(**values)

    def _persisted_configs(self) -> Dict[str, Tuple[str, DesiredConfig]]:
        persisted = {}
        for filename in self.unit_store.find_unit_files():
            if not filename.endswith('.network'):
                continue
            content = self.unit_store.read(filename)
            if content is None:
                continue
            name, desired = parse_network_unit(content)
            if name and desired and name not in persisted:
                persisted[name] = (self.unit_store.path(filename), desired)
        return persisted

    def detect_kind(self, name: str) -> InterfaceKind:
        base = os.path.join(self.sys_path, name)
        if os.path.exists(os.path.join(base, 'wireless')) or os.path.exists(os.path.join(base, 'phy80211')):
            return InterfaceKind.WIRELESS
        if os.path.exists(os.path.join(base, 'bridge')):
            return InterfaceKind.BRIDGE
        if os.path.exists(os.path.join(base, 'bonding')):
            return InterfaceKind.BOND
        uevent = _read_sysfs(os.path.join(base, 'uevent')) or ''
        if 'DEVTYPE=wireguard' in uevent or os.path.exists(os.path.join(base, 'tun_flags')):
            return InterfaceKind.TUNNEL
        if not os.path.exists(os.path.join(base, 'device')):
            return InterfaceKind.VIRTUAL
        return InterfaceKind.WIRED

    def get_interface_link_status(self, name: str) -> str:
        """
        Get the operational state of a network interface.

        Returns:
            str: 'up', 'down', 'no-carrier', 'dormant' or 'unknown'
        """
        base = os.path.join(self.sys_path, name)
        operstate = _read_sysfs(os.path.join(base, 'operstate'))
        if operstate is None:
            return 'unknown'
        if operstate in ('down', 'dormant'):
            return operstate

        # 检查carrier状态（链路是否连通）
        carrier = _read_sysfs(os.path.join(base, 'carrier'))
        if carrier is not None:
            return 'up' if carrier == '1' else 'no-carrier'

        if operstate == 'up':
            return 'up'
        if operstate == 'unknown':
            return 'unknown'
        return 'no-carrier'
