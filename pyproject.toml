[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "msdvfs"
version = "0.1.0"
description = "In-memory FAT16 mass-storage volume with drag-and-drop file transfer tracking"
requires-python = ">=3.10"
dependencies = []
keywords = ["fat16", "virtual filesystem", "mass storage", "usb msc", "drag and drop"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Filesystems",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["msdvfs"]

[tool.pytest.ini_options]
testpaths = ["tests"]
addopts = "-ra"
