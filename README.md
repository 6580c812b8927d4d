# magcalib

Calibration of 3-axis magnetometers used in 9-axis motion sensors.

The package collects raw magnetometer readings, fits an ellipsoid to them
to find the hard-iron offset and the soft-iron correction matrix, rates how
well the collected data covers a sphere, and runs a Mahony sensor-fusion
filter to track the orientation of the sensor while it is being turned.
A finished calibration can be written back to the device over a serial port.

## Modules

- `magcalib.matrix` – small dense-matrix helpers on lists of rows:
  `identity`, `determinant3`, `inverse_symmetric3`, `eigencompute` (Jacobi
  eigen-decomposition of a symmetric matrix, unsorted), `invert`
  (Gauss-Jordan inverse with full pivoting) and `renormalize_rotation`.
  Singular matrices give the identity from `inverse_symmetric3` and
  `invert`.
- `magcalib.magcal` – the calibration. `MagCalibration` holds the buffer of
  raw samples (650 by default) and the accepted solution (`hard_iron`,
  `inv_soft_iron`, `field`, `fit_error`, `solver`).
  `apply_calibration(rawx, rawy, rawz)` returns a calibrated `Point` in µT.
  `run()` does work only on every twentieth call; it then uses the 4-, 7-
  or 10-element solver for at least 40, 100 or 150 stored samples, and
  accepts the trial when its field strength lies within 22–67 µT and either
  there is no calibration yet, its fit error is no worse than the aged
  current one, or it comes from a better solver with a fit error of at most
  4 %. It returns `True` when a new calibration was applied. The solvers
  are also available on their own as `calibrate4`, `calibrate7` and
  `calibrate10`, each returning a `TrialCalibration`.
- `magcalib.quality` – `SphereQuality` accumulates calibrated points and
  reports `surface_gap_error()`, `magnitude_variance_error()` and
  `wobble_error()`; `spherical_fit_error(magcal)` returns the solver's fit
  error. `sphere_region` maps a direction to one of 100 equal-area regions
  and `ideal_sphere_points()` gives the ideal point of each region.
- `magcalib.visualize` – `Quaternion`, `quaternion_to_rotation`, `rotate`,
  and `scene_points`, which calibrates and rotates every stored sample into
  `DrawPoint` positions according to `ViewSettings` (and refills a
  `SphereQuality` if one is given). `aspect_frustum(width, height)` returns
  the perspective frustum for a window.
- `magcalib.mahony` – `MahonyFilter(sample_rate)`, with `update` (gyro in
  degrees per second), `update_marg`, `update_imu` and `orientation()`;
  `inv_sqrt` is the fast inverse square root it uses.
- `magcalib.rawdata` – `RawDataProcessor` takes 9-value raw records
  (accelerometer, gyroscope, magnetometer counts), fills the calibration
  buffer (discarding old samples wisely once it is full), runs the
  calibration, averages oversampled readings into the fusion filter and
  keeps the latest `orientation`. `calibration_packet()` builds the 68-byte
  packet, with its `crc16` check, that stores the calibration on the
  device; `cal1_data` and `cal2_data` check the values the device echoes
  back (within `is_float_ok`) and call `on_confirmed` when both match.
- `magcalib.serialdata` – `PacketParser` for `0x7E`-framed binary packets
  (`decode_escapes` undoes the byte stuffing), `AsciiParser` for the
  `Raw:`, `Cal1:` and `Cal2:` text lines, and `SerialLink`, which opens a
  port (device path or pyserial URL) at 115200 baud, reads and dispatches
  incoming data to both parsers and sends the calibration packet.
  Failures raise `ConnectionError`. `format_bytes` gives a hex dump line.
- `magcalib.portlist` – `serial_port_list()` returns the sorted serial
  ports on this machine (by probing `/dev` on Linux, through pyserial
  elsewhere); `is_serial_device_name` tells whether a device file name
  looks like a Linux serial port.

## Example

Which region of the sphere does a direction fall in?

```python
from magcalib.quality import sphere_region

sphere_region(0.0, 0.0, 1.0)    # 0, the north cap
sphere_region(0.0, 0.0, -1.0)   # 99, the south cap
```

A session wires the pieces together. The sample rate, oversampling ratio
and count scales depend on the sensor and its firmware; the numbers below
are only placeholders.

```python
from magcalib.magcal import MagCalibration
from magcalib.mahony import MahonyFilter
from magcalib.portlist import serial_port_list
from magcalib.quality import SphereQuality
from magcalib.rawdata import RawDataProcessor
from magcalib.serialdata import SerialLink
from magcalib.visualize import scene_points

magcal = MagCalibration()
quality = SphereQuality()
processor = RawDataProcessor(
    magcal,
    MahonyFilter(sample_rate=100.0),
    quality,
    oversample_ratio=4,
    g_per_count=1 / 8192,
    deg_per_sec_per_count=1 / 16,
)

with SerialLink(processor) as link:
    link.open(serial_port_list()[0])
    while True:
        link.read()
        points = scene_points(magcal, processor.orientation, quality=quality)
        if quality.surface_gap_error() < 15.0 and magcal.fit_error < 3.5:
            link.send_calibration()
            break
```

`scene_points` is what refreshes the quality figures: it resets the
`SphereQuality` and feeds it every calibrated sample.

## What the package does not do

There is no command-line program and no graphical window. `scene_points`
and `aspect_frustum` only compute where each sample should be drawn; the
drawing itself, and any loop that reads the port, is left to the
application using the package.

## Tests

The tests use pytest and are installed with the `test` extra.