#!/usr/bin/env python3

from setuptools import setup
import os

# Read long description safely
long_description = "Firewall-ready Microsoft 365 endpoint lists from the published endpoint feed"
if os.path.exists("README.md"):
    with open("README.md", "r", encoding="utf-8") as f:
        long_description = f.read()

setup(
    name="ms365-endpoint-lists",
    version="1.0.0",
    description="Firewall-ready Microsoft 365 endpoint lists from the published endpoint feed",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="MS365 Endpoint Lists",
    py_modules=["generate_ms365_lists"],
    python_requires=">=3.9",
    install_requires=[
        "requests>=2.25.0",
    ],
    extras_require={
        "test": [
            "pytest>=7.0",
        ],
    },
    entry_points={
        "console_scripts": [
            "ms365-lists=generate_ms365_lists:main",
        ],
    },
    classifiers=[
        "Development Status :: 5 - Production/Stable",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: System :: Networking :: Firewalls",
    ],
)
