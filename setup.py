#!/usr/bin/env python3
"""
Setup script for mangavision
============================
"""

from pathlib import Path
from setuptools import setup, find_packages

# Read the README
HERE = Path(__file__).parent
README = (HERE / "README.md").read_text(encoding='utf-8')

# Read the requirements
def read_requirements(filename):
    """Read requirements from a file, skipping comments and blank lines"""
    req_file = HERE / filename
    if req_file.exists():
        lines = req_file.read_text().strip().split('\n')
        return [l.strip() for l in lines if l.strip() and not l.strip().startswith('#')]
    return []

setup(
    name="mangavision",
    version="1.0.0",
    description="Manga page preprocessing for OCR and speech bubble / panel detection",
    long_description=README,
    long_description_content_type="text/markdown",
    license="MIT",
    classifiers=[
        "Development Status :: 4 - Beta",
        "Intended Audience :: Developers",
        "License :: OSI Approved :: MIT License",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Programming Language :: Python :: 3.12",
        "Programming Language :: Python :: 3.13",
        "Topic :: Scientific/Engineering :: Image Recognition",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
    ],
    keywords="manga ocr speech bubble panel detection opencv yolo",

    # Package layout
    package_dir={"": "src"},
    packages=find_packages(where="src"),

    # Requirements
    python_requires=">=3.9",
    install_requires=read_requirements("requirements.txt"),
    extras_require={
        "ml": read_requirements("requirements-ml.txt"),
        "dev": [
            "pytest>=6.0",
            "pytest-cov",
            "black",
            "flake8",
            "mypy",
        ],
    },
)
