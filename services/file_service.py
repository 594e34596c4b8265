import os
import grp
import shutil
import fnmatch
import logging
import tempfile
import threading
from datetime import datetime
from typing import Dict, List, Optional, Tuple, Union

import config
from utils.config_parser import unit_interface_name

logger = logging.getLogger(__name__)

UNIT_SUFFIXES = (".network", ".netdev")

# filename -> (content, mode, uid, gid), None when the file did not exist
FileSnapshot = Dict[str, Optional[Tuple[bytes, int, int, int]]]


def ensure_directory_exists(directory: str, mode: int = 0o755) -> None:
    """
    Ensure that the given directory exists, create it if it doesn't.

    Args:
        directory: Directory path
        mode: Permission bits for a newly created directory
    """
    if not os.path.exists(directory):
        os.makedirs(directory, mode=mode, exist_ok=True)


def atomic_write_file(path: str, content: Union[str, bytes], mode: int = 0o644,
                      group: Optional[str] = None, owner: Optional[Tuple[int, int]] = None) -> None:
    """
    Replace path with content so readers see either the old or the new file, never a mix.

    The data goes to a temporary file in the same directory, is flushed to disk,
    gets its final permissions and is then renamed over the target.

    Args:
        path: Destination file
        content: New file content
        mode: Permission bits, applied before the rename so secrets are never world readable
        group: Optional group owner (e.g. systemd-network)
        owner: Exact (uid, gid) to give the file, takes precedence over group
    """
    directory = os.path.dirname(path) or "."
    ensure_directory_exists(directory)
    data = content.encode('utf-8') if isinstance(content, str) else content

    fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    try:
        os.fchmod(fd, mode)
        if owner is not None:
            os.fchown(fd, *owner)
        elif group:
            try:
                os.fchown(fd, -1, grp.getgrnam(group).gr_gid)
            except KeyError:
                logger.warning(f"Group {group} does not exist, leaving group ownership of {path} unchanged")
        with os.fdopen(fd, 'wb') as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_path, path)
    except BaseException:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise

    dir_fd = os.open(directory, os.O_RDONLY)
    try:
        os.fsync(dir_fd)
    finally:
        os.close(dir_fd)


def remove_file(path: str) -> bool:
    try:
        os.unlink(path)
        return True
    except FileNotFoundError:
        return False


class UnitStore:
    """
    The persisted-unit directory.

    All writers hold `lock` while touching the directory, so concurrent applies on
    different interfaces cannot interleave their file operations.
    """

    def __init__(self, directory: Optional[str] = None, backup_dir: Optional[str] = None):
        self.directory = directory or config.NETWORK_CONFIG_DIR
        self.backup_dir = backup_dir or config.NETWORK_CONFIG_BACKUP_DIR
        self.lock = threading.RLock()

    def path(self, filename: str) -> str:
        return os.path.join(self.directory, filename)

    def unit_filename(self, interface: str, role: str, suffix: str = ".network") -> str:
        return f"{config.UNIT_PREFIXES[role]}-{interface}{suffix}"

    def find_unit_files(self) -> List[str]:
        """
        Find all .network and .netdev files in the configuration directory.

        Returns:
            List[str]: Sorted file names (without directory)
        """
        try:
            return sorted(name for name in os.listdir(self.directory) if name.endswith(UNIT_SUFFIXES))
        except FileNotFoundError:
            return []

    def read(self, filename: str) -> Optional[str]:
        try:
            with open(self.path(filename), 'r') as f:
                return f.read()
        except FileNotFoundError:
            return None

    def find_units_for_interface(self, interface: str) -> Dict[str, str]:
        """
        Get every unit whose match predicate names exactly this interface.

        Units matching through a glob or a list of names are reported in the log
        but not returned, since they configure other interfaces too.

        Returns:
            Dict[str, str]: File name to content
        """
        units = {}
        for filename in self.find_unit_files():
            content = self.read(filename)
            if content is None:
                continue
            name = unit_interface_name(content)
            if not name:
                continue
            if name == interface:
                units[filename] = content
            elif any(fnmatch.fnmatchcase(interface, pattern) for pattern in name.split()):
                logger.warning(f"{filename} also matches {interface} (Name={name}), leaving it in place")
        return units

    def snapshot(self, filenames: List[str]) -> FileSnapshot:
        """Capture exact bytes, permissions and ownership so a failed apply can restore them."""
        saved = {}
        for filename in filenames:
            path = self.path(filename)
            try:
                with open(path, 'rb') as f:
                    stat = os.fstat(f.fileno())
                    saved[filename] = (f.read(), stat.st_mode & 0o7777, stat.st_uid, stat.st_gid)
            except FileNotFoundError:
                saved[filename] = None
        return saved

    def restore(self, saved: FileSnapshot) -> None:
        with self.lock:
            for filename, previous in saved.items():
                if previous is None:
                    if remove_file(self.path(filename)):
                        logger.info(f"Removed {filename} while restoring previous configuration")
                else:
                    content, mode, uid, gid = previous
                    atomic_write_file(self.path(filename), content, mode, owner=(uid, gid))
                    logger.info(f"Restored previous {filename}")

    def backup_config_file(self, filename: str) -> Optional[str]:
        """
        Create a timestamped copy of a unit in the backup directory.

        Returns:
            Optional[str]: Backup file path, None if the unit does not exist
        """
        file_path = self.path(filename)
        if not os.path.exists(file_path):
            return None

        ensure_directory_exists(self.backup_dir, mode=0o700)
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        backup_path = os.path.join(self.backup_dir, f"{filename}.{timestamp}")
        shutil.copy2(file_path, backup_path)
        logger.info(f"Created backup of {file_path} at {backup_path}")
        return backup_path

    def write_unit(self, filename: str, content: str, mode: int = None, group: Optional[str] = None) -> None:
        with self.lock:
            self.backup_config_file(filename)
            atomic_write_file(self.path(filename), content, mode or config.NETWORK_UNIT_MODE, group)
            logger.info(f"Successfully wrote configuration to {self.path(filename)}")

    def remove_unit(self, filename: str) -> None:
        with self.lock:
            self.backup_config_file(filename)
            if remove_file(self.path(filename)):
                logger.info(f"Removed stale unit {self.path(filename)}")
