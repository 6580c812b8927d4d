[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "magcalib"
version = "0.1.0"
description = "Magnetometer hard- and soft-iron calibration, fit quality metrics and Mahony orientation fusion for 9-axis motion sensors"
requires-python = ">=3.10"
keywords = [
    "magnetometer",
    "calibration",
    "imu",
    "ahrs",
    "hard-iron",
    "soft-iron",
    "sensor-fusion",
    "mahony",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: Science/Research",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Scientific/Engineering :: Physics",
    "Topic :: Scientific/Engineering :: Mathematics",
]
dependencies = [
    "pyserial",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["magcalib"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
