"""gpu-devbox: GPU development container management."""

__version__ = "0.1.0"
