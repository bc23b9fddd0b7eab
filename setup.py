"""Setup script for proxrestore."""

from setuptools import setup, find_packages

setup(
    name="proxrestore",
    version="1.0.0",
    description="Proxmox VE / PBS Restore Orchestrator",
    long_description=open("README.md").read(),
    long_description_content_type="text/markdown",
    packages=find_packages(exclude=["tests", "tests.*"]),
    install_requires=[
        "boto3>=1.26.0",
        "PyYAML>=6.0",
        "tqdm>=4.64.0",
        "pyrage>=1.1.0",
        "bech32>=1.2.0",
        "zstandard>=0.21.0"
    ],
    extras_require={
        'test': ['pytest>=7.0']
    },
    entry_points={
        "console_scripts": [
            "proxrestore=proxrestore.main:main",
        ],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: System Administrators",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
