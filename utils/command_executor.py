import subprocess
import threading
import logging
from dataclasses import dataclass
from typing import List, Optional

logger = logging.getLogger(__name__)

# 取消检查间隔（秒）
_POLL_INTERVAL = 0.1


@dataclass
class CommandResult:
    args: List[str]
    returncode: Optional[int]
    stdout: str = ""
    stderr: str = ""
    timed_out: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return self.returncode == 0 and not self.timed_out and not self.cancelled


def execute_command(args: List[str], timeout: Optional[float] = None, input_text: Optional[str] = None,
                    cancel_event: Optional[threading.Event] = None,
                    sensitive: bool = False) -> CommandResult:
    """
    Execute a system command and return the result.

    The command runs without a shell. The child is killed if the timeout expires
    or the cancel event is set, so no process outlives the call.

    Args:
        args: Command and arguments
        timeout: Maximum run time in seconds, None for no limit
        input_text: Data written to the child's stdin (never logged)
        cancel_event: Event that aborts the command when set
        sensitive: Do not log the command's output

    Returns:
        CommandResult: Exit status and captured output
    """
    logger.debug(f"Executing command: {' '.join(args)}")
    try:
        process = subprocess.Popen(
            args,
            stdin=subprocess.PIPE if input_text is not None else subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            universal_newlines=True
        )
    except (FileNotFoundError, PermissionError) as e:
        logger.error(f"Cannot start {args[0]}: {e}")
        return CommandResult(args=args, returncode=None, stderr=str(e))

    remaining = timeout
    pending_input = input_text
    while True:
        step = _POLL_INTERVAL if cancel_event is not None else remaining
        if step is not None and remaining is not None:
            step = min(step, remaining)
        try:
            stdout, stderr = process.communicate(input=pending_input, timeout=step)
            break
        except subprocess.TimeoutExpired:
            # stdin 已在第一次 communicate 时写入
            pending_input = None
            if remaining is not None:
                remaining -= step
            if cancel_event is not None and cancel_event.is_set():
                _kill(process)
                logger.info(f"Command cancelled: {args[0]}")
                return CommandResult(args=args, returncode=None, cancelled=True)
            if remaining is not None and remaining <= 0:
                _kill(process)
                logger.error(f"Command timed out after {timeout}s: {args[0]}")
                return CommandResult(args=args, returncode=None, timed_out=True)

    result = CommandResult(args=args, returncode=process.returncode,
                           stdout=stdout.strip(), stderr=stderr.strip())
    if not result.success:
        if sensitive:
            logger.error(f"Command failed: {args[0]} (status {process.returncode})")
        else:
            logger.error(f"Command failed: {' '.join(args)}, Error: {result.stderr}")
    return result


def _kill(process: subprocess.Popen) -> None:
    process.kill()
    try:
        process.communicate(timeout=1)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} did not exit after SIGKILL")
