import os
import logging

VERSION = "0.1.0"

# Network configuration paths
NETWORK_CONFIG_DIR = os.environ.get("LANTERN_NETWORK_DIR", "/etc/systemd/network/")
NETWORK_CONFIG_BACKUP_DIR = os.environ.get("LANTERN_BACKUP_DIR", "/var/backups/lantern/")
NETWORK_INTERFACES_SYS_PATH = "/sys/class/net/"
WPA_SUPPLICANT_DIR = os.environ.get("LANTERN_WPA_DIR", "/etc/wpa_supplicant/")
HOTSPOT_RUN_DIR = os.environ.get("LANTERN_RUN_DIR", "/run/lantern/")
"""
hostapd/dnsmasq 配置文件和 PID 文件目录
位于 /run 下，重启后自动清空
"""

CREDENTIALS_DB_PATH = os.environ.get("LANTERN_CREDENTIALS_DB", "/var/lib/lantern/credentials.db")
"""
SQLite database holding saved WiFi credentials.
The file contains secrets and is created with mode 0600.
"""

# Excluded network interfaces
EXCLUDED_INTERFACES = ["bonding_masters", "sit0", "lo"]

# Application configuration
DEBUG = os.environ.get("DEBUG", "False").lower() == "true"
HOST = os.environ.get("HOST", "127.0.0.1")
PORT = int(os.environ.get("PORT", "8000"))
LOG_FILE = os.environ.get("LANTERN_LOG_FILE")

# Commands (argument lists, never run through a shell)
RELOAD_NETWORKD_CMD = ["networkctl", "reload"]
RECONFIGURE_NETWORKD_CMD = ["networkctl", "reconfigure"]
REQUIRED_TOOLS = ["ip", "networkctl"]
OPTIONAL_TOOLS = ["iw", "wpa_supplicant", "hostapd", "dnsmasq", "wg", "iptables"]

# Unit file priority prefixes per interface role
UNIT_PREFIXES = {
    "wired": "10",
    "wireless": "25",
    "hotspot": "30",
    "tunnel": "50",
}

NETWORK_UNIT_MODE = 0o644
TUNNEL_UNIT_MODE = 0o640
"""
.netdev files carry the WireGuard private key. systemd-networkd reads them
as the systemd-network group, so the file is owner rw + group r, no world bits.
"""
TUNNEL_UNIT_GROUP = os.environ.get("LANTERN_TUNNEL_GROUP", "systemd-network")
SUPPLICANT_CONF_MODE = 0o600

WIFI_COUNTRY = os.environ.get("LANTERN_WIFI_COUNTRY", "US")

# Timeouts and retry bounds (seconds unless noted)
COMMAND_TIMEOUT = float(os.environ.get("LANTERN_COMMAND_TIMEOUT", "10"))
SCAN_TIMEOUT = float(os.environ.get("LANTERN_SCAN_TIMEOUT", "15"))
TOOL_DIAGNOSTIC_LIMIT = 512
"""Maximum number of characters of tool output carried in an ExternalToolError"""

CONVERGENCE_ATTEMPTS = int(os.environ.get("LANTERN_CONVERGENCE_ATTEMPTS", "3"))
CONVERGENCE_BACKOFF_SECONDS = float(os.environ.get("LANTERN_CONVERGENCE_BACKOFF", "1.0"))
"""
配置生效确认：最多轮询 CONVERGENCE_ATTEMPTS 次，间隔 CONVERGENCE_BACKOFF_SECONDS 秒
超出后返回 "submitted, unconfirmed"，不回滚
"""

ASSOCIATION_ATTEMPTS = int(os.environ.get("LANTERN_ASSOCIATION_ATTEMPTS", "15"))
ASSOCIATION_INTERVAL = float(os.environ.get("LANTERN_ASSOCIATION_INTERVAL", "1.0"))

HOTSPOT_CONFIRM_ATTEMPTS = int(os.environ.get("LANTERN_HOTSPOT_CONFIRM_ATTEMPTS", "5"))
HOTSPOT_CONFIRM_INTERVAL = float(os.environ.get("LANTERN_HOTSPOT_CONFIRM_INTERVAL", "1.0"))
PROCESS_STOP_TIMEOUT = 5.0

REGISTRY_POLL_INTERVAL = float(os.environ.get("LANTERN_POLL_INTERVAL", "5"))
REGISTRY_QUERY_TIMEOUT = float(os.environ.get("LANTERN_QUERY_TIMEOUT", "3"))
AUTO_CONNECT_INTERVAL = float(os.environ.get("LANTERN_AUTO_CONNECT_INTERVAL", "30"))
TASK_WORKERS = int(os.environ.get("LANTERN_TASK_WORKERS", "4"))

# Hotspot defaults
HOTSPOT_DEFAULT_CHANNEL = 6
HOTSPOT_DEFAULT_GATEWAY = "192.168.4.1"
HOTSPOT_DEFAULT_PREFIX = 24
HOTSPOT_DHCP_LEASE = "24h"
HOTSPOT_UPSTREAM_DNS = ["8.8.8.8", "8.8.4.4"]


def validate_config():
    """Check configuration values and log a warning for each problem found."""
    warnings = []

    if not (1 <= PORT <= 65535):
        warnings.append(f"PORT ({PORT}) must be within 1-65535")

    if CONVERGENCE_ATTEMPTS <= 0:
        warnings.append(f"CONVERGENCE_ATTEMPTS ({CONVERGENCE_ATTEMPTS}) must be greater than 0")

    if SCAN_TIMEOUT <= 0 or COMMAND_TIMEOUT <= 0:
        warnings.append("SCAN_TIMEOUT and COMMAND_TIMEOUT must be greater than 0")

    if REGISTRY_QUERY_TIMEOUT >= REGISTRY_POLL_INTERVAL:
        warnings.append(f"REGISTRY_QUERY_TIMEOUT ({REGISTRY_QUERY_TIMEOUT}) should be shorter "
                        f"than REGISTRY_POLL_INTERVAL ({REGISTRY_POLL_INTERVAL})")

    if not os.path.isdir(NETWORK_CONFIG_DIR):
        warnings.append(f"NETWORK_CONFIG_DIR ({NETWORK_CONFIG_DIR}) does not exist")

    logger = logging.getLogger(__name__)
    for warning in warnings:
        logger.warning(f"Configuration warning: {warning}")

    return warnings


__all__ = [
    'VERSION', 'NETWORK_CONFIG_DIR', 'NETWORK_CONFIG_BACKUP_DIR', 'NETWORK_INTERFACES_SYS_PATH',
    'WPA_SUPPLICANT_DIR', 'HOTSPOT_RUN_DIR', 'CREDENTIALS_DB_PATH',
    'EXCLUDED_INTERFACES', 'DEBUG', 'HOST', 'PORT', 'LOG_FILE',
    'RELOAD_NETWORKD_CMD', 'RECONFIGURE_NETWORKD_CMD', 'REQUIRED_TOOLS', 'OPTIONAL_TOOLS',
    'UNIT_PREFIXES', 'NETWORK_UNIT_MODE', 'TUNNEL_UNIT_MODE', 'TUNNEL_UNIT_GROUP', 'SUPPLICANT_CONF_MODE',
    'WIFI_COUNTRY', 'COMMAND_TIMEOUT', 'SCAN_TIMEOUT', 'TOOL_DIAGNOSTIC_LIMIT',
    'CONVERGENCE_ATTEMPTS', 'CONVERGENCE_BACKOFF_SECONDS', 'ASSOCIATION_ATTEMPTS', 'ASSOCIATION_INTERVAL',
    'HOTSPOT_CONFIRM_ATTEMPTS', 'HOTSPOT_CONFIRM_INTERVAL', 'PROCESS_STOP_TIMEOUT',
    'REGISTRY_POLL_INTERVAL', 'REGISTRY_QUERY_TIMEOUT', 'AUTO_CONNECT_INTERVAL', 'TASK_WORKERS',
    'HOTSPOT_DEFAULT_CHANNEL', 'HOTSPOT_DEFAULT_GATEWAY', 'HOTSPOT_DEFAULT_PREFIX',
    'HOTSPOT_DHCP_LEASE', 'HOTSPOT_UPSTREAM_DNS', 'validate_config'
]
