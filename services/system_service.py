import os
import shutil
import signal
import logging
import threading
from typing import List, Optional

import psutil

import config
from utils.command_executor import CommandResult, execute_command
from utils.exceptions import ExternalToolError, OperationCancelled

logger = logging.getLogger(__name__)


def check_prerequisites() -> List[str]:
    """
    Collect fatal startup problems: missing root privilege and missing required tools.

    Optional tools only produce a warning since the features using them
    fail individually.

    Returns:
        List[str]: Problems found, empty when startup may proceed
    """
    problems = []
    if os.geteuid() != 0:
        problems.append("root privileges are required to manage network interfaces")

    for tool in config.REQUIRED_TOOLS:
        if shutil.which(tool) is None:
            problems.append(f"required tool '{tool}' was not found in PATH")

    for tool in config.OPTIONAL_TOOLS:
        if shutil.which(tool) is None:
            logger.warning(f"Optional tool '{tool}' not found, related features are unavailable")

    return problems


class ToolGateway:
    """
    Uniform entry point for every external process the manager runs.

    Each named operation builds an argument list, runs it with a bounded timeout and
    raises ExternalToolError on failure, so callers never inspect exit codes.
    """

    def __init__(self, timeout: Optional[float] = None, scan_timeout: Optional[float] = None):
        self.timeout = timeout or config.COMMAND_TIMEOUT
        self.scan_timeout = scan_timeout or config.SCAN_TIMEOUT

    def run(self, args: List[str], timeout: Optional[float] = None, input_text: Optional[str] = None,
            cancel_event: Optional[threading.Event] = None, sensitive: bool = False) -> CommandResult:
        """
        Run a tool and raise on any failure.

        Raises:
            ExternalToolError: Non-zero exit, timeout, or the tool is missing
            OperationCancelled: The cancel event was set while the tool ran
        """
        result = execute_command(args, timeout=timeout or self.timeout, input_text=input_text,
                                 cancel_event=cancel_event, sensitive=sensitive)
        if result.cancelled:
            raise OperationCancelled(f"{args[0]} cancelled")
        if result.timed_out:
            raise ExternalToolError(args[0], timed_out=True)
        if not result.success:
            detail = f"status {result.returncode}" if sensitive else result.stderr or result.stdout
            raise ExternalToolError(args[0], detail, returncode=result.returncode)
        return result

    # systemd-networkd

    def reload_networkd(self) -> None:
        self.run(config.RELOAD_NETWORKD_CMD)

    def reconfigure(self, interface: str) -> None:
        self.run(config.RECONFIGURE_NETWORKD_CMD + [interface])

    # ip

    def set_link(self, interface: str, up: bool) -> None:
        self.run(["ip", "link", "set", "dev", interface, "up" if up else "down"])

    def flush_addresses(self, interface: str) -> None:
        self.run(["ip", "address", "flush", "dev", interface])

    def delete_link(self, interface: str) -> None:
        self.run(["ip", "link", "delete", "dev", interface])

    def default_route(self) -> str:
        return self.run(["ip", "route", "show", "default"]).stdout

    # iw

    def iw_scan(self, interface: str, cancel_event: Optional[threading.Event] = None) -> str:
        return self.run(["iw", "dev", interface, "scan"], timeout=self.scan_timeout,
                        cancel_event=cancel_event).stdout

    def iw_link(self, interface: str) -> str:
        return self.run(["iw", "dev", interface, "link"]).stdout

    def iw_info(self, interface: str) -> str:
        return self.run(["iw", "dev", interface, "info"]).stdout

    def iw_station_dump(self, interface: str) -> str:
        return self.run(["iw", "dev", interface, "station", "dump"]).stdout

    # wpa_supplicant

    def start_supplicant(self, interface: str, cancel_event: Optional[threading.Event] = None) -> None:
        unit = f"wpa_supplicant@{interface}.service"
        self.run(["systemctl", "enable", unit], cancel_event=cancel_event)
        self.run(["systemctl", "restart", unit], cancel_event=cancel_event)

    def stop_supplicant(self, interface: str) -> None:
        unit = f"wpa_supplicant@{interface}.service"
        self.run(["systemctl", "stop", unit])
        self.run(["systemctl", "disable", unit])

    # WireGuard

    def wg_genkey(self) -> str:
        return self.run(["wg", "genkey"], sensitive=True).stdout.strip()

    def wg_pubkey(self, private_key: str) -> str:
        # 私钥只通过 stdin 传入，不出现在命令行参数中
        return self.run(["wg", "pubkey"], input_text=private_key + "\n", sensitive=True).stdout.strip()

    def wg_show_dump(self, name: str) -> str:
        return self.run(["wg", "show", name, "dump"], sensitive=True).stdout

    # hostapd / dnsmasq / NAT

    def start_hostapd(self, conf_path: str, pid_file: str) -> None:
        self.run(["hostapd", "-B", "-P", pid_file, conf_path])

    def start_dnsmasq(self, conf_path: str, pid_file: str) -> None:
        self.run(["dnsmasq", "-C", conf_path, f"--pid-file={pid_file}"])

    def sysctl(self, key: str, value: str) -> None:
        self.run(["sysctl", "-w", f"{key}={value}"])

    def iptables(self, args: List[str]) -> None:
        self.run(["iptables"] + args)

    # processes

    @staticmethod
    def read_pid_file(pid_file: str) -> Optional[int]:
        """Return the PID recorded in pid_file if that process is still alive."""
        try:
            with open(pid_file, 'r') as f:
                pid = int(f.read().strip())
        except (OSError, ValueError):
            return None
        return pid if psutil.pid_exists(pid) else None

    def terminate(self, pid: int, timeout: Optional[float] = None) -> None:
        """
        Stop a process with SIGTERM, escalating to SIGKILL after the timeout.

        A process that has already exited is not an error.
        """
        timeout = timeout or config.PROCESS_STOP_TIMEOUT
        try:
            process = psutil.Process(pid)
            logger.info(f"Stopping process {pid} ({process.name()})")
            process.send_signal(signal.SIGTERM)
            try:
                process.wait(timeout=timeout)
            except psutil.TimeoutExpired:
                logger.warning(f"Process {pid} did not respond to SIGTERM, sending SIGKILL")
                process.kill()
                process.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            logger.debug(f"Process {pid} already exited")
        except psutil.TimeoutExpired:
            raise ExternalToolError("kill", f"process {pid} survived SIGKILL", timed_out=True)
        except psutil.AccessDenied as e:
            raise ExternalToolError("kill", f"not permitted to stop process {pid}: {e}")
