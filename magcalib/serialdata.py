"""Decoding of the motion-sensor serial stream and the serial link itself.

The sensor sends two kinds of data over the same stream:

* binary packets framed by ``0x7E`` bytes, with ``0x7D`` escaping, carrying
  orientation quaternions and magnetic calibration data;
* ASCII lines such as ``Raw:...``, ``Cal1:...`` and ``Cal2:...``.

Every chunk received is offered to both decoders.
"""

from __future__ import annotations

import struct
from collections.abc import Sequence
from enum import Enum
from typing import Protocol

import serial

from .magcal import MagCalibration
from .visualize import Quaternion

#: Baud rate used to talk to the sensor.
BAUD_RATE = 115200

_BUFFER_SIZE = 256
_READ_SIZE = 256
_WRITE_TIMEOUT = 1.0

_FRAME = 0x7E
_ESCAPE = 0x7D
_ESCAPED_FRAME = 0x5E

_PRIMARY_DATA = 1
_PRIMARY_LENGTH = 34
_MAGNETIC_CAL = 6
_MAGNETIC_CAL_LENGTH = 14
_QUATERNION_SCALE = 30000.0


class _Processor(Protocol):
    magcal: MagCalibration
    orientation: Quaternion

    def raw_data(self, data: Sequence[int]) -> object: ...

    def cal1_data(self, data: Sequence[float]) -> None: ...

    def cal2_data(self, data: Sequence[float]) -> None: ...

    def calibration_packet(self) -> bytes: ...


def format_bytes(name: str, data: bytes) -> str:
    """Return a one-line hex dump of ``data`` labelled with ``name``."""
    hexed = "".join(f" {b:02X}" for b in data)
    return f"{name} ({len(data):2d} bytes):{hexed}"


def decode_escapes(data: bytes) -> bytes:
    """Undo the byte stuffing of a framed packet.

    ``0x7D 0x5E`` becomes ``0x7E``; ``0x7D`` followed by any other byte
    becomes ``0x7D``.  Raises ValueError if the result would not fit the
    packet buffer.
    """
    out = bytearray()
    rest = bytes(data)
    while True:
        idx = rest.find(_ESCAPE)
        if idx < 0:
            out += rest
            break
        out += rest[:idx]
        following = rest[idx + 1] if idx + 1 < len(rest) else None
        out.append(_FRAME if following == _ESCAPED_FRAME else _ESCAPE)
        rest = rest[idx + 2 :]
        if not rest:
            break
    if len(out) > _BUFFER_SIZE:
        raise ValueError("decoded packet exceeds the packet buffer")
    return bytes(out)


def _to_int16(value: int) -> int:
    return ((value + 0x8000) & 0xFFFF) - 0x8000


class PacketParser:
    """Reassembles framed binary packets and applies them to a processor."""

    def __init__(self, processor: _Processor) -> None:
        self.processor = processor
        self._buffer = bytearray()

    def _handle_encoded(self, data: bytes) -> bool:
        try:
            decoded = decode_escapes(data)
        except ValueError:
            return False
        return self.handle_packet(decoded)

    def feed(self, data: bytes) -> bool:
        """Consume a chunk of the stream.

        Returns True if a packet completed by a frame byte at the start of a
        frame gap was recognised.
        """
        data = bytes(data)
        recognised = False
        while data:
            idx = data.find(_FRAME)
            if idx < 0:
                if len(self._buffer) + len(data) > _BUFFER_SIZE:
                    self._buffer.clear()
                    return False
                self._buffer += data
                break
            if idx > 0:
                if len(self._buffer) + idx > _BUFFER_SIZE:
                    self._buffer.clear()
                    return False
                self._buffer += data[:idx]
                self._handle_encoded(bytes(self._buffer))
                self._buffer.clear()
                data = data[idx + 1 :]
            else:
                if self._buffer:
                    if self._handle_encoded(bytes(self._buffer)):
                        recognised = True
                    self._buffer.clear()
                data = data[1:]
        return recognised

    def handle_packet(self, data: bytes) -> bool:
        """Apply one decoded packet; return True if it was recognised."""
        if not data:
            return False
        if data[0] == _PRIMARY_DATA and len(data) == _PRIMARY_LENGTH:
            return self._primary_data(data)
        if data[0] == _MAGNETIC_CAL and len(data) == _MAGNETIC_CAL_LENGTH:
            return self._magnetic_cal(data)
        return False

    def _primary_data(self, data: bytes) -> bool:
        q = struct.unpack_from("<4h", data, 24)
        self.processor.orientation = Quaternion(*(v / _QUATERNION_SCALE for v in q))
        return True

    def _magnetic_cal(self, data: bytes) -> bool:
        ident, x, y, z = struct.unpack_from("<4h", data, 6)
        mc = self.processor.magcal
        w = mc.inv_soft_iron
        if ident == 1:
            mc.hard_iron[0] = x * 0.1
            mc.hard_iron[1] = y * 0.1
            mc.hard_iron[2] = z * 0.1
            return True
        if ident == 2:
            w[0][0] = x * 0.001
            w[1][1] = y * 0.001
            w[2][2] = z * 0.001
            return True
        if ident == 3:
            w[0][1] = w[1][0] = x / 1000.0
            w[0][2] = y / 1000.0
            w[1][2] = w[2][1] = z / 1000.0
            return True
        if 10 <= ident < mc.buffer_size + 10:
            n = ident - 10
            if not mc.valid[n] or mc.raw[n] != (x, y, z):
                mc.raw[n] = (x, y, z)
                mc.valid[n] = True
            return True
        return False


class _State(Enum):
    WORD = "word"
    RAW = "raw"
    CAL1 = "cal1"
    CAL2 = "cal2"


_WORDS = {"Raw:": _State.RAW, "Cal1:": _State.CAL1, "Cal2:": _State.CAL2}


class _ParseFailure(Exception):
    pass


class AsciiParser:
    """Parses the ``Raw:``, ``Cal1:`` and ``Cal2:`` text lines of the stream."""

    def __init__(self, processor: _Processor) -> None:
        self.processor = processor
        self._cal = [0.0] * 10
        self._restart()

    def _restart(self) -> None:
        self._state = _State.WORD
        self._word = ""
        self._values: list[int] = []
        self._index = 0
        self._clear_number()

    def _clear_number(self) -> None:
        self._num = 0
        self._neg = False
        self._digits = 0

    def feed(self, data: bytes) -> bool:
        """Consume a chunk of the stream; return True if a complete line was handled.

        A malformed line resets the parser and discards the rest of the chunk.
        """
        handled = False
        try:
            for byte in bytes(data):
                if self._step(chr(byte)):
                    handled = True
        except _ParseFailure:
            self._restart()
            return False
        return handled

    def _step(self, ch: str) -> bool:
        if self._state is _State.WORD:
            self._match_word(ch)
            return False
        if ch == "-":
            if self._digits > 0:
                raise _ParseFailure
            self._neg = True
            return False
        if "0" <= ch <= "9":
            self._num = self._num * 10 + ord(ch) - ord("0")
            self._digits += 1
            return False
        if ch == "\n":
            return False
        if self._state is _State.RAW:
            return self._raw_char(ch)
        return self._cal_char(ch)

    def _match_word(self, ch: str) -> None:
        candidate = self._word + ch
        if not any(word.startswith(candidate) for word in _WORDS):
            self._word = ""
            return
        state = _WORDS.get(candidate)
        if state is None:
            self._word = candidate
            return
        self._state = state
        self._word = ""
        self._values = []
        self._index = 0
        self._clear_number()

    def _raw_value(self) -> int:
        value = -self._num if self._neg else self._num
        return _to_int16(value)

    def _raw_char(self, ch: str) -> bool:
        if ch == ",":
            if len(self._values) >= 8:
                raise _ParseFailure
            self._values.append(self._raw_value())
            self._clear_number()
            return False
        if ch == "\r":
            if len(self._values) != 8:
                raise _ParseFailure
            self._values.append(self._raw_value())
            values = self._values
            self._restart()
            self.processor.raw_data(values)
            return True
        raise _ParseFailure

    def _finish_cal_value(self) -> None:
        self._cal[self._index] += self._num / 10.0**self._digits
        if self._neg:
            self._cal[self._index] *= -1.0

    def _cal_char(self, ch: str) -> bool:
        if ch == ".":
            if self._index > 9:
                raise _ParseFailure
            self._cal[self._index] = float(self._num)
            self._num = 0
            self._digits = 0
            return False
        if ch == ",":
            if self._index > 9:
                raise _ParseFailure
            self._finish_cal_value()
            self._index += 1
            self._clear_number()
            return False
        if ch == "\r":
            required = 9 if self._state is _State.CAL1 else 8
            if self._index != required:
                raise _ParseFailure
            self._finish_cal_value()
            values = list(self._cal)
            state = self._state
            self._restart()
            if state is _State.CAL1:
                self.processor.cal1_data(values)
            else:
                self.processor.cal2_data(values)
            return True
        raise _ParseFailure


class SerialLink:
    """A serial connection to the sensor feeding both stream decoders."""

    def __init__(self, processor: _Processor) -> None:
        self.processor = processor
        self.packets = PacketParser(processor)
        self.ascii = AsciiParser(processor)
        self._port: serial.SerialBase | None = None

    def __enter__(self) -> SerialLink:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def open(self, name: str) -> None:
        """Open the named port (device path or pyserial URL) at 115200 baud, raw mode."""
        self.close()
        try:
            self._port = serial.serial_for_url(
                name,
                baudrate=BAUD_RATE,
                timeout=0,
                write_timeout=_WRITE_TIMEOUT,
            )
        except (serial.SerialException, ValueError) as exc:
            raise ConnectionError(f"cannot open {name}: {exc}") from exc

    def is_open(self) -> bool:
        """Return True while the port is open."""
        return self._port is not None and self._port.is_open

    def feed(self, data: bytes) -> bool:
        """Offer received bytes to both decoders; return True if either handled something."""
        packet_ok = self.packets.feed(data)
        ascii_ok = self.ascii.feed(data)
        return packet_ok or ascii_ok

    def _require_port(self) -> serial.SerialBase:
        if self._port is None or not self._port.is_open:
            raise ConnectionError("port is not open")
        return self._port

    def read(self) -> int:
        """Read whatever is available, decode it and return the number of bytes read.

        A failing port is closed and ConnectionError raised.
        """
        port = self._require_port()
        try:
            data = port.read(_READ_SIZE)
        except serial.SerialException as exc:
            self.close()
            raise ConnectionError(f"read failed: {exc}") from exc
        if data:
            self.feed(data)
        return len(data)

    def write(self, data: bytes) -> int:
        """Write all of ``data`` and return the number of bytes written."""
        port = self._require_port()
        payload = bytes(data)
        try:
            written = port.write(payload)
        except serial.SerialException as exc:
            raise ConnectionError(f"write failed: {exc}") from exc
        return len(payload) if written is None else written

    def send_calibration(self) -> int:
        """Send the processor's current calibration packet to the sensor."""
        return self.write(self.processor.calibration_packet())

    def close(self) -> None:
        """Close the port if it is open."""
        if self._port is not None:
            port, self._port = self._port, None
            port.close()