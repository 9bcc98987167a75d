#!/usr/bin/env python3
"""
Setup configuration for ory-mcp.

This allows the provider and example server to be installed as a Python package.
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read the README file
this_directory = Path(__file__).parent
long_description = (this_directory / "README.md").read_text()

# Read requirements
requirements = []
with open(this_directory / "requirements.txt") as f:
    requirements = [line.strip() for line in f if line.strip() and not line.startswith("#")]

test_requirements = [
    "pytest>=7.0.0",
    "anyio>=4.0.0",
    "respx>=0.21.0",
]

setup(
    name="ory-mcp",
    version="0.1.0",
    author="helxplatform",
    author_email="",
    description="OAuth 2.1 provider for MCP servers that delegates authorization to Ory Network or Ory Hydra",
    long_description=long_description,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Topic :: Security",
        "Topic :: Internet :: WWW/HTTP :: HTTP Servers",
        "Topic :: Software Development :: Libraries :: Python Modules",
    ],
    keywords="ory hydra oauth2 oauth pkce mcp authorization introspection",
    packages=find_packages(exclude=["test", "test.*"]),
    python_requires=">=3.11",
    install_requires=requirements,
    entry_points={
        "console_scripts": [
            "ory-mcp-server=ory_mcp.server:main",
        ],
    },
    include_package_data=True,
    package_data={
        "": ["README.md", "requirements.txt"],
    },
    extras_require={
        "dev": test_requirements + [
            "black>=23.0.0",
            "flake8>=6.0.0",
            "mypy>=1.0.0",
        ],
        "test": test_requirements,
    },
)
