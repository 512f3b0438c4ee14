"""Setup configuration for gpu-devbox."""

from setuptools import setup, find_packages

setup(
    name="gpu-devbox",
    version="0.1.0",
    description="Build, run and manage a GPU development container with rootless Docker support",
    package_dir={"": "src"},
    packages=find_packages(where="src"),
    package_data={"gpu_devbox": ["docker/Dockerfile"]},
    python_requires=">=3.10",
    install_requires=[
        "docker>=7.0.0",
        "pydantic>=2.0.0",
        "click>=8.1.0",
    ],
    extras_require={
        "dev": [
            "pytest>=8.0.0",
            "pytest-timeout>=2.2.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "devbox=gpu_devbox.cli:main",
            "devbox-rootless=gpu_devbox.cli:rootless_main",
        ],
    },
)
