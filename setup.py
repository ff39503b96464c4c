"""Setup configuration for ddc."""

from setuptools import setup, find_packages

setup(
    name="ddc",
    version="1.0.0",
    description="Diagnostic collector that archives logs, metrics and REST artifacts from cluster nodes",
    author="Your Name",
    packages=find_packages(include=["ddc", "ddc.*"]),
    install_requires=[
        "click>=8.1.7",
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "httpx>=0.25.0",
        "psutil>=5.9.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ddc=ddc.cli:cli",
        ],
    },
    python_requires=">=3.8",
)
