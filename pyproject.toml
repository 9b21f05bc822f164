[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "nodeagent"
version = "0.1.0"
description = "Linux node metrics agent serving Prometheus-format metrics, with parsers for procfs, cgroups and container state"
requires-python = ">=3.12"
keywords = ["monitoring", "metrics", "prometheus", "cgroup", "procfs", "containers", "linux"]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: No Input/Output (Daemon)",
    "Intended Audience :: System Administrators",
    "Operating System :: POSIX :: Linux",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Monitoring",
]
dependencies = [
    "psutil",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[project.scripts]
nodeagent = "nodeagent.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["nodeagent"]

[tool.pytest.ini_options]
addopts = "-ra"
