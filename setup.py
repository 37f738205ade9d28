# -*- coding: utf-8 -*-
from setuptools import setup, find_packages
import sys
if sys.version_info < (3, 9):
    sys.exit('Sorry, Python < 3.9 is not supported.')

with open('./requirements.txt') as f:
    INSTALL_REQUIRES = f.read().splitlines()

with open('./requirements-dev.txt') as f:
    TESTS_REQUIRE = f.read().splitlines()

setup(
    name="konflux-compliance",
    author="ACM Release Team",
    description="Compliance scanner for Konflux components with JIRA reporting",
    license="Apache License, Version 2.0",
    packages=find_packages(exclude=["tests", "tests.*"]),
    entry_points={
        'console_scripts': [
            'konflux-compliance = konflux_compliance.__main__:main'
        ],
    },
    install_requires=INSTALL_REQUIRES,
    tests_require=TESTS_REQUIRE,
    extras_require={
        'tests': TESTS_REQUIRE,
    },
    dependency_links=[],
    python_requires='>=3.9',
    classifiers=[
        "Development Status :: 4 - Beta",
        "Programming Language :: Python :: 3",
        "Programming Language :: Python :: 3 :: Only",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
        "Environment :: Console",
        "Operating System :: POSIX",
        "License :: OSI Approved :: Apache Software License",
        "Intended Audience :: Developers",
        "Topic :: Software Development :: Build Tools",
        "Natural Language :: English",
    ]
)
