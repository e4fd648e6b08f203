"""Metadata describing the configuration of package"""
import os
from setuptools import find_packages, setup

BUILD_ID = os.environ.get("BUILD_BUILDID", "0")

with open("README.rst", "r", encoding="utf-8") as f:
    long_description = f.read()

setup(
    name="klilqrax",
    version="0.1" + "." + BUILD_ID,
    packages=find_packages(exclude=["tests", "tests.*"]),
    description="KL-constrained iLQG trajectory optimisation with JAX.",
    long_description=long_description,
    long_description_content_type="text/x-rst",
    license="MIT",
    install_requires=[
        "numpy",
        "jax",
        "jaxopt",
        "chex",
        "flax",
    ],
    extras_require={
        "test": ["pytest"],
        "dev": ["twine>=4.0.2"],
    },
    python_requires=">=3.9",
    classifiers=[
        "Development Status :: 1 - Planning",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: MIT License",
        "Operating System :: POSIX :: Linux",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Topic :: Software Development",
        "Topic :: Utilities",
    ],
)
