"""Disk space management utilities."""

import shutil
from pathlib import Path


def get_disk_usage(path: str | Path) -> dict:
    """Get disk usage for the filesystem holding ``path``."""
    usage = shutil.disk_usage(str(path))
    return {
        "total_bytes": usage.total,
        "used_bytes": usage.used,
        "free_bytes": usage.free,
        "percent": round(usage.used / usage.total * 100, 1) if usage.total > 0 else 0,
    }


def has_room_for(path: str | Path, size_bytes: int, reserve_bytes: int = 0) -> bool:
    """True if ``size_bytes`` fit on the filesystem of ``path`` above ``reserve_bytes``."""
    return get_disk_usage(path)["free_bytes"] - size_bytes >= reserve_bytes


def get_directory_size(path: str | Path) -> int:
    """Calculate total size of all files in a directory (recursive)."""
    total = 0
    for f in Path(path).rglob("*"):
        if f.is_file():
            total += f.stat().st_size
    return total
