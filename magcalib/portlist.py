"""Discovery of the serial ports a sensor may be attached to."""

from __future__ import annotations

import errno
import os
import stat
import struct
import sys
from pathlib import Path

# Device name prefixes (after "tty") used by Linux serial drivers.
LINUX_DEVICE_PREFIXES: tuple[str, ...] = (
    "S", "USB", "ACM", "MI", "MX", "C", "D", "P", "M", "E", "L", "W", "X",
    "SR", "n", "FB", "AM", "AMA", "AT", "BF", "CL", "A", "SMX", "SOIC", "IOC",
    "PSC", "MM", "B", "NX", "PZ", "SAC", "SA", "AM", "TX", "SC", "SG", "HV",
    "UL", "VR", "CPM", "Y", "SL", "SLG", "SLM", "CH", "F", "H", "I", "R",
    "SI", "T", "V",
)

_DEV_DIR = "/dev"


def is_serial_device_name(name: str) -> bool:
    """Return True if a device file name looks like a Linux serial port."""
    if not name.startswith("tty"):
        return False
    rest = name[3:]
    return any(rest.startswith(prefix) for prefix in LINUX_DEVICE_PREFIXES)


def _responds_like_serial(path: str) -> bool:
    """Open the device and check that it answers terminal and modem-line queries."""
    import fcntl
    import termios

    try:
        fd = os.open(path, os.O_RDONLY | os.O_NOCTTY | os.O_NONBLOCK)
    except PermissionError:
        # Keep the port visible so the user learns about the permission problem.
        return True
    except OSError as exc:
        return exc.errno == errno.EACCES
    try:
        termios.tcgetattr(fd)
        fcntl.ioctl(fd, termios.TIOCMGET, struct.pack("i", 0))
    except (OSError, termios.error):
        return False
    finally:
        os.close(fd)
    return True


def _linux_ports(dev_dir: str | os.PathLike[str]) -> list[str]:
    """Return the serial ports found among the device files in ``dev_dir``."""
    directory = Path(dev_dir)
    try:
        names = os.listdir(directory)
    except OSError:
        return []
    found = []
    for name in names:
        if not is_serial_device_name(name):
            continue
        path = str(directory / name)
        try:
            mode = os.stat(path).st_mode
        except OSError:
            continue
        if not stat.S_ISCHR(mode):
            continue
        if _responds_like_serial(path):
            found.append(path)
    return sorted(found)


def _pyserial_ports() -> list[str]:
    from serial.tools import list_ports

    found = []
    for info in list_ports.comports():
        device = info.device
        if sys.platform.startswith("win"):
            if not device.startswith("COM"):
                continue
            device += ":"
        found.append(device)
    return sorted(found)


def serial_port_list() -> list[str]:
    """Return the sorted names of the serial ports present on this machine."""
    if sys.platform.startswith("linux"):
        return _linux_ports(_DEV_DIR)
    return _pyserial_ports()