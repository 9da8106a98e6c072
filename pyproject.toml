[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "infraoffload"
version = "0.1.0"
description = "Node agent building blocks for offloading Kubernetes pod interfaces, service NAT and Calico policy updates to an infrastructure manager."
requires-python = ">=3.10"
keywords = [
    "kubernetes",
    "calico",
    "felix",
    "cni",
    "nat",
    "network-policy",
    "sriov",
    "grpc",
    "dataplane",
]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: System Administrators",
    "Intended Audience :: Developers",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
]
dependencies = [
    "grpcio",
    "psutil",
    "watchdog",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["infraoffload"]

[tool.hatch.build.targets.sdist]
include = [
    "infraoffload",
    "tests",
]

[tool.pytest.ini_options]
addopts = "-ra"

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_redundant_casts = true
check_untyped_defs = true
