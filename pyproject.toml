[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "modlink"
version = "0.1.0"
description = "Asyncio Modbus TCP and RTU client transports, and TCP-based Modbus servers."
requires-python = ">=3.10"
dependencies = [
    "pyserial",
]
keywords = ["modbus", "modbus-tcp", "modbus-rtu", "asyncio", "industrial"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Framework :: AsyncIO",
    "Intended Audience :: Developers",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]

[project.optional-dependencies]
test = [
    "pytest",
    "pytest-asyncio",
]

[tool.hatch.build.targets.wheel]
packages = ["modlink"]

[tool.pytest.ini_options]
addopts = "-ra"
