"""Boot time detection.

Reads the `btime` line of /proc/stat directly; elsewhere (or if procfs is
unavailable) asks psutil.
"""

from pathlib import Path

import psutil


def get_boot_time(proc_root: Path = Path("/proc")) -> int:
    """Return system boot time as Unix timestamp.

    Args:
        proc_root: procfs mount point to read `stat` from.
    """
    try:
        with open(proc_root / "stat", "rb") as f:
            for line in f:
                if line.startswith(b"btime"):
                    fields = line.split()
                    if len(fields) >= 2 and fields[1].isdigit():
                        return int(fields[1])
                    break
    except OSError:
        pass
    return int(psutil.boot_time())
