#!/usr/bin/env python3
"""
Setup script for Safe Upgrade
"""

from setuptools import setup, find_packages

with open("README.md", "r", encoding="utf-8") as fh:
    long_description = fh.read()

with open("requirements.txt", "r", encoding="utf-8") as fh:
    requirements = [line.strip() for line in fh if line.strip() and not line.startswith("#")]

setup(
    name="safe-upgrade",
    version="1.0.0",
    author="Security Controls Team",
    description="Integrity-verified upgrades of installed security controls",
    long_description=long_description,
    long_description_content_type="text/markdown",
    url="https://github.com/h4x0r/1-click-github-sec",
    packages=find_packages(exclude=['tests', 'tests.*']),
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "Topic :: Security",
        "Topic :: Software Development :: Version Control :: Git",
        "License :: OSI Approved :: Apache Software License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
    python_requires=">=3.8",
    install_requires=requirements,
    extras_require={
        'test': ['pytest>=7.0'],
    },
    entry_points={
        'console_scripts': [
            'safe-upgrade=safe_upgrade.cli.upgradectl:main',
        ],
    },
    include_package_data=True,
    package_data={
        'safe_upgrade': ['data/*.yaml'],
    },
)
