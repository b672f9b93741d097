"""
CardRescue Utility Functions
Includes external command execution, tool detection and helper functions

Dependencies:
    pip install psutil
"""

import os
import sys
import shutil
import logging
import subprocess
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, FrozenSet, Iterable, List, Optional

import psutil

logger = logging.getLogger(__name__)

# Every external program CardRescue knows how to drive
KNOWN_TOOLS = (
    "ddrescue", "lsblk", "losetup", "umount", "mount",
    "photorec", "recoverjpeg", "foremost", "exiftool",
    "fsck.exfat", "fsck.vfat", "fsck.ext4",
)

# Lines of a streamed command kept in its CommandResult
STREAM_TAIL_LINES = 200


@dataclass
class CommandResult:
    """Outcome of one external command"""
    command: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr, as a transcript would show it"""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


CommandRunner = Callable[..., CommandResult]


def run_command(command: List[str], timeout: Optional[float] = None,
                capture_output: bool = True,
                on_line: Optional[Callable[[str], None]] = None) -> CommandResult:
    """
    Run an external command without raising on failure.

    Args:
        command: Program and arguments
        timeout: Seconds before giving up, None waits forever
        capture_output: Capture stdout/stderr instead of inheriting the terminal
        on_line: Receive each line of merged stdout/stderr as it is written;
            the result keeps only the last lines and timeout does not apply

    Returns:
        CommandResult; returncode is -1 if the program could not be started
    """
    logger.debug(f"Running command: {' '.join(command)}")
    start_time = time.time()
    if on_line is not None:
        return _stream_command(command, on_line, start_time)

    try:
        result = subprocess.run(
            command,
            capture_output=capture_output,
            text=True,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired:
        return CommandResult(command, -1, stderr=f"Command timed out after {timeout}s",
                             duration_seconds=time.time() - start_time)
    except OSError as e:
        return CommandResult(command, -1, stderr=str(e),
                             duration_seconds=time.time() - start_time)

    cmd_result = CommandResult(
        command=command,
        returncode=result.returncode,
        stdout=result.stdout if capture_output else "",
        stderr=result.stderr if capture_output else "",
        duration_seconds=time.time() - start_time,
    )
    if not cmd_result.success:
        logger.debug(f"Command {command[0]} exited {result.returncode}: "
                     f"{(result.stderr or '')[:500]}")
    return cmd_result


def _stream_command(command: List[str], on_line: Callable[[str], None],
                    start_time: float) -> CommandResult:
    tail = deque(maxlen=STREAM_TAIL_LINES)
    try:
        proc = subprocess.Popen(command, stdout=subprocess.PIPE, stderr=subprocess.STDOUT,
                                text=True, bufsize=1)
    except OSError as e:
        return CommandResult(command, -1, stderr=str(e),
                             duration_seconds=time.time() - start_time)

    # universal newlines turn the \r of progress redraws into line breaks
    with proc:
        for line in proc.stdout:
            line = line.rstrip("\n")
            tail.append(line)
            on_line(line)
        returncode = proc.wait()

    return CommandResult(command, returncode, stdout="\n".join(tail),
                         duration_seconds=time.time() - start_time)


def detect_capabilities(tools: Iterable[str] = KNOWN_TOOLS) -> FrozenSet[str]:
    """
    Check once which external tools are installed.

    Returns:
        Immutable set of tool names found on PATH
    """
    tools = tuple(tools)
    found = frozenset(tool for tool in tools if shutil.which(tool) is not None)
    missing = sorted(set(tools) - found)
    if missing:
        logger.info(f"Tools not installed: {', '.join(missing)}")
    return found


def free_bytes(path: Path) -> Optional[int]:
    """Free space on the filesystem holding path, None if it cannot be read"""
    try:
        return psutil.disk_usage(str(path)).free
    except OSError as e:
        logger.warning(f"Could not determine free space of {path}: {e}")
        return None


def device_size(path: str) -> int:
    """Size in bytes of a block device or regular file"""
    fd = os.open(path, os.O_RDONLY)
    try:
        return os.lseek(fd, 0, os.SEEK_END)
    finally:
        os.close(fd)


def format_bytes(size: float) -> str:
    """
    Format byte size to human-readable format

    Args:
        size: Size in bytes

    Returns:
        Formatted string (e.g., "1.5 GB")
    """
    for unit in ['B', 'KB', 'MB', 'GB', 'TB']:
        if size < 1024.0:
            return f"{size:.1f} {unit}"
        size /= 1024.0
    return f"{size:.1f} PB"


def check_root_permissions() -> bool:
    """
    Check if running with root permissions

    Returns:
        True if has permissions, False otherwise
    """
    if sys.platform.startswith('linux') or sys.platform == 'darwin':
        return os.geteuid() == 0
    return False
