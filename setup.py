#!/usr/bin/env python3
"""
CardRescue - Setup Configuration
Enables installation via pip and creates command-line entry points
"""

from setuptools import setup, find_packages
from pathlib import Path

# Read README for long description
readme_file = Path(__file__).parent / "README.md"
long_description = readme_file.read_text() if readme_file.exists() else ""

# Read requirements
requirements_file = Path(__file__).parent / "requirements.txt"
requirements = []
if requirements_file.exists():
    with open(requirements_file) as f:
        requirements = [
            line.strip()
            for line in f
            if line.strip() and not line.startswith('#')
        ]

setup(
    name="cardrescue",
    version="1.0.0",
    description="Photo recovery from failing camera memory cards",
    long_description=long_description,
    long_description_content_type="text/markdown",
    author="CardRescue Development Team",
    license="MIT",

    # Package configuration
    packages=find_packages(where="src"),
    package_dir={"": "src"},
    include_package_data=True,

    # Python version requirement
    python_requires=">=3.8",

    # Dependencies
    install_requires=requirements,

    # Optional dependencies
    extras_require={
        'dev': [
            'pytest>=7.4.0',
            'pytest-cov>=4.1.0',
            'black>=23.7.0',
            'flake8>=6.0.0',
            'mypy>=1.4.0',
        ],
    },

    # Entry points - Creates command-line scripts
    entry_points={
        'console_scripts': [
            'cardrescue=cardrescue.ui.cli:main',
        ],
    },

    # Classifiers
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: End Users/Desktop",
        "Intended Audience :: System Administrators",
        "Topic :: System :: Recovery Tools",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Operating System :: POSIX :: Linux",
    ],

    # Keywords
    keywords="recovery sd-card ddrescue photorec carving jpeg",
)
