[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "fcmicro"
version = "0.1.0"
description = "Host and guest helpers for running containers inside microVMs: stub drives, VM directories, vsock and FIFO I/O proxying, and task management."
requires-python = ">=3.10"
keywords = ["microvm", "containers", "vsock", "stub-drive", "cpuset", "oci"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Emulators",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["fcmicro"]

[tool.pytest.ini_options]
addopts = "-ra"
