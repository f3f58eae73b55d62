#!/usr/bin/env python3
"""
btw - voice-activated local assistant
Setup script for pip installation
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README
readme = Path(__file__).parent / "README.md"
long_description = readme.read_text() if readme.exists() else ""

setup(
    name="btw",
    version="0.1.0",
    description="Wake word daemon that runs allow-listed desktop commands or answers questions",
    long_description=long_description,
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    classifiers=[
        "Programming Language :: Python :: 3",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
    ],
    python_requires=">=3.9",
    install_requires=[
        "sounddevice>=0.4.6",
        "soundfile>=0.12.1",
        "numpy>=1.24.0",
        "faster-whisper>=0.10.0",
        "anthropic>=0.18.0",
        "aiohttp>=3.9.0",
        "edge-tts>=6.1.0",
        "pydantic>=2.0",
        "pvporcupine>=3.0.0",
        "python-dotenv>=1.0.0",
        "tomli>=2.0.0; python_version<'3.11'",
    ],
    extras_require={
        "openwakeword": ["openwakeword>=0.6.0"],
        "elevenlabs": ["elevenlabs>=1.0.0"],
        "dev": ["pytest", "pytest-asyncio", "black", "mypy"],
    },
    entry_points={
        "console_scripts": [
            "btw=btw.__main__:main",
        ],
    },
    include_package_data=True,
    package_data={
        "btw": ["data/*.json"],
    },
)
