#!/usr/bin/env python
from setuptools import setup


with open('requirements.txt', 'r') as fh:
    requirements = fh.read().splitlines()

setup(
    name="ftps-session",
    version="0.1.0",
    description="FTP over TLS (explicit and implicit) with TLS session reuse on data connections",
    author="ftps-session contributors",
    classifiers=["Programming Language :: Python :: 3 :: Only"],
    python_requires=">=3.9",
    install_requires=requirements,
    extras_require={
        "test": ["pytest", "trustme"],
    },
    entry_points="""
    [console_scripts]
    ftps-check=ftps_session.cli:main
    """,
    packages=["ftps_session"]
)
