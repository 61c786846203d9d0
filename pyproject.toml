[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "gpushare"
version = "0.17.0"
description = "Node-side tooling for sharing GPUs in Kubernetes: label-driven config switching, MPS control daemon handling and CUDA result helpers"
requires-python = ">=3.10"
keywords = [
    "kubernetes",
    "gpu",
    "mps",
    "node-labels",
    "cuda",
    "tmpfs",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Systems Administration",
]
dependencies = [
    "requests",
    "pyyaml",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
gpushare-config-manager = "gpushare.config_manager:main"
gpushare-mount-shm = "gpushare.shm_mount:main"

[tool.hatch.build.targets.wheel]
packages = ["gpushare"]

[tool.hatch.build.targets.sdist]
include = [
    "gpushare",
    "tests",
    "pyproject.toml",
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
