"""Linux node metrics agent with procfs, cgroup and container-state parsers."""

__version__ = "0.1.0"
__all__ = ["__version__"]