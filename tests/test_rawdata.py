import struct
from functools import reduce

import pytest

from magcalib.magcal import MagCalibration
from magcalib.mahony import MahonyFilter
from magcalib.quality import SphereQuality
from magcalib.rawdata import (
    CAL_PACKET_LENGTH,
    RawDataProcessor,
    crc16,
    is_float_ok,
)
from magcalib.visualize import Quaternion


class RecordingFusion:
    def __init__(self):
        self.resets = 0
        self.updates = []

    def reset(self):
        self.resets += 1

    def update(self, accel, mag, gyro_samples):
        self.updates.append((tuple(accel), tuple(mag), [tuple(g) for g in gyro_samples]))

    def orientation(self):
        return Quaternion(0.5, 0.5, 0.5, 0.5)


def _processor(magcal=None, fusion=None, on_confirmed=None, ratio=4):
    magcal = magcal if magcal is not None else MagCalibration()
    fusion = fusion if fusion is not None else RecordingFusion()
    return RawDataProcessor(
        magcal, fusion, SphereQuality(), ratio, 0.5, 2.0, on_confirmed
    )


def test_crc16_check_value():
    assert reduce(crc16, b"123456789", 0xFFFF) == 0x4B37


def test_crc16_zero():
    assert crc16(0, 0) == 0


@pytest.mark.parametrize(
    "actual, expected, ok",
    [
        (1.0, 1.0, True),
        (1.0, 1.01, False),
        (0.00009, 0.0, True),
        (0.0002, 0.0, False),
    ],
)
def test_is_float_ok(actual, expected, ok):
    assert is_float_ok(actual, expected) is ok


def test_calibration_packet_layout():
    proc = _processor()
    proc.reset()
    packet = proc.calibration_packet()
    assert len(packet) == CAL_PACKET_LENGTH
    assert packet[:2] == bytes((117, 84))
    values = struct.unpack("<16f", packet[2:66])
    assert values[:6] == (0.0,) * 6
    assert values[6:9] == (0.0, 0.0, 80.0)
    assert values[9] == 50.0
    assert values[10:] == (1.0, 1.0, 1.0, 0.0, 0.0, 0.0)
    assert reduce(crc16, packet[:66], 0xFFFF) == struct.unpack("<H", packet[66:])[0]
    assert reduce(crc16, packet, 0xFFFF) == 0
    assert proc.calibration_pending


def test_echo_confirms_calibration():
    calls = []
    proc = _processor(on_confirmed=lambda: calls.append(True))
    proc.reset()
    proc.calibration_packet()
    proc.cal1_data([0.0] * 6 + [0.0, 0.0, 80.0, 50.0])
    assert calls == []
    assert proc.calibration_pending
    proc.cal2_data([1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0, 0.0])
    assert calls == [True]
    assert not proc.calibration_pending


def test_wrong_echo_does_not_confirm():
    calls = []
    proc = _processor(on_confirmed=lambda: calls.append(True))
    proc.reset()
    proc.calibration_packet()
    proc.cal1_data([0.0] * 6 + [0.0, 0.0, 81.0, 50.0])
    proc.cal2_data([1.0, 0.0, 0.0, 0.0, 1.0, 0.0, 0.0, 0.0, 1.0])
    assert calls == []
    assert proc.calibration_pending


def test_echo_without_packet_is_ignored():
    calls = []
    proc = _processor(on_confirmed=lambda: calls.append(True))
    proc.cal1_data([0.0] * 10)
    proc.cal2_data([0.0] * 9)
    assert calls == []


def test_reset_restores_initial_guess():
    fusion = RecordingFusion()
    magcal = MagCalibration()
    magcal.hard_iron = [1.0, 2.0, 3.0]
    proc = _processor(magcal=magcal, fusion=fusion)
    proc.reset()
    assert magcal.hard_iron == [0.0, 0.0, 80.0]
    assert magcal.field == 50.0
    assert fusion.resets == 1


def test_raw_data_rejects_wrong_length():
    with pytest.raises(ValueError):
        _processor().raw_data([1, 2, 3])


def test_raw_data_oversamples_and_averages():
    fusion = RecordingFusion()
    magcal = MagCalibration()
    proc = _processor(magcal=magcal, fusion=fusion)
    proc.reset()
    reading = [10, 20, 30, 4, 5, 6, 100, 200, 300]
    results = [proc.raw_data(reading) for _ in range(4)]
    assert results == [False, False, False, True]
    assert len(fusion.updates) == 1
    accel, mag, gyro = fusion.updates[0]
    assert accel == pytest.approx((10 * 0.5, 20 * 0.5, 30 * 0.5))
    assert mag == pytest.approx(tuple(magcal.apply_calibration(100, 200, 300)))
    assert gyro == [pytest.approx((4 * 2.0, 5 * 2.0, 6 * 2.0))] * 4
    assert proc.orientation == Quaternion(0.5, 0.5, 0.5, 0.5)
    assert magcal.samples()[0] == (100, 200, 300)


def test_raw_data_with_mahony_filter_keeps_unit_quaternion():
    proc = _processor(fusion=MahonyFilter(100.0), ratio=2)
    proc.reset()
    for k in range(6):
        proc.raw_data([0, 0, 8192, k, -k, 2 * k, 300 + k, -200, 450])
    q = proc.orientation
    assert q.q0**2 + q.q1**2 + q.q2**2 + q.q3**2 == pytest.approx(1.0, abs=1e-6)


def test_full_buffer_discards_one_of_closest_pair():
    magcal = MagCalibration(buffer_size=5)
    proc = _processor(magcal=magcal)
    proc.reset()
    proc.rng.seed(3)
    for x in (0, 1000, 2000, 3000, 3001, 5000):
        proc.raw_data([0, 0, 0, 0, 0, 0, x, 0, 0])
    samples = magcal.samples()
    assert magcal.valid_count() == 5
    assert (5000, 0, 0) in samples
    assert ((3000, 0, 0) in samples) != ((3001, 0, 0) in samples)
    assert {(0, 0, 0), (1000, 0, 0), (2000, 0, 0)} <= set(samples)