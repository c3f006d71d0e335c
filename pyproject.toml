[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "lidarkit"
version = "0.1.0"
description = "Host-side lidar tools: JSON configuration parsing, parameter checks, device log capture and a firmware upgrade state machine"
requires-python = ">=3.10"
dependencies = []
keywords = ["lidar", "firmware", "upgrade", "logging", "configuration"]
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
    "Topic :: Scientific/Engineering :: Interface Engine/Protocol Translator",
]

[project.optional-dependencies]
test = ["pytest"]

[tool.hatch.build.targets.wheel]
packages = ["lidarkit"]

[tool.pytest.ini_options]
addopts = "-ra"
