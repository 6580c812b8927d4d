import os

import pytest

from magcalib.portlist import (
    LINUX_DEVICE_PREFIXES,
    _linux_ports,
    is_serial_device_name,
    serial_port_list,
)


@pytest.mark.parametrize(
    "name",
    ["ttyS0", "ttyUSB0", "ttyACM1", "ttyAMA0", "ttyn3", "ttyMXC2", "ttyV9"],
)
def test_serial_names_accepted(name):
    assert is_serial_device_name(name) is True


@pytest.mark.parametrize(
    "name", ["tty", "tty0", "ttyq0", "sda", "ptmx", "null", "usbtty0", "TTYS0"]
)
def test_other_names_rejected(name):
    assert is_serial_device_name(name) is False


def test_every_prefix_accepted():
    assert all(is_serial_device_name("tty" + p + "0") for p in LINUX_DEVICE_PREFIXES)


def test_regular_files_are_not_ports(tmp_path):
    (tmp_path / "ttyUSB0").write_text("")
    (tmp_path / "ttyS1").write_text("")
    assert _linux_ports(tmp_path) == []


def test_missing_directory_gives_empty_list(tmp_path):
    assert _linux_ports(tmp_path / "absent") == []


def test_non_terminal_char_device_excluded(tmp_path):
    os.symlink("/dev/null", tmp_path / "ttyS99")
    assert _linux_ports(tmp_path) == []


def test_pseudo_terminal_excluded(tmp_path):
    master, slave = os.openpty()
    try:
        os.symlink(os.ttyname(slave), tmp_path / "ttyS98")
        assert _linux_ports(tmp_path) == []
    finally:
        os.close(master)
        os.close(slave)


def test_serial_port_list_is_sorted_strings():
    ports = serial_port_list()
    assert ports == sorted(ports)
    assert all(isinstance(p, str) and p for p in ports)