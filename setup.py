"""Setup script for the ZEV device console."""

from setuptools import find_packages, setup

setup(
    name="zev-console",
    version="0.1.0",
    description="Health monitoring, audit logs and maintenance console for ZEV billing devices",
    author="ZEV Console Team",
    packages=find_packages(include=["zevops", "zevops.*", "zevctl", "zevctl.*"]),
    install_requires=[
        "pydantic>=2.5.0",
        "pydantic-settings>=2.1.0",
        "structlog>=24.1.0",
        "httpx>=0.26.0",
        "click>=8.1.7",
        "rich>=13.7.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.4.0",
            "pytest-asyncio>=0.21.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "zevctl=zevctl.main:main",
        ],
    },
    python_requires=">=3.10",
)
