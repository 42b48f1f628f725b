#!/usr/bin/env python3
"""
Setup script for Universal Data Sink
"""

from setuptools import setup
import os

# Read the README file for long description
def read_readme():
    readme_path = os.path.join(os.path.dirname(__file__), 'README.md')
    if os.path.exists(readme_path):
        with open(readme_path, 'r', encoding='utf-8') as f:
            return f.read()
    return "Universal Data Sink"

# Read requirements
def read_requirements():
    requirements_path = os.path.join(os.path.dirname(__file__), 'requirements.txt')
    if os.path.exists(requirements_path):
        with open(requirements_path, 'r', encoding='utf-8') as f:
            return [line.strip() for line in f if line.strip() and not line.startswith('#')]
    return []

setup(
    name="universal-data-sink",
    version="1.0.0",
    description="Logs UDP packets to a file chosen at runtime, one timestamped line per packet",
    long_description=read_readme(),
    long_description_content_type="text/markdown",
    author="Auto-generated",
    author_email="",
    url="",
    py_modules=["datasink"],
    install_requires=read_requirements(),
    extras_require={
        "test": ["pytest"],
    },
    python_requires=">=3.8",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: OS Independent",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.8",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: System :: Logging",
        "Topic :: System :: Networking",
    ],
    keywords="udp logger data sink timestamp csv",
    entry_points={
        "console_scripts": [
            "datasink=datasink:main",
        ],
    },
    include_package_data=True,
    zip_safe=False,
)
