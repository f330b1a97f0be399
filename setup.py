#!/usr/bin/env python3
"""
Setup script for segment-sync

Installation:
    pip install .
    pip install -e .[dev]  # Development mode

Distribution:
    python setup.py sdist bdist_wheel
    twine upload dist/*
"""

from setuptools import setup
import re

# Read version from segment_sync.py
with open('segment_sync.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in segment_sync.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='segment-sync',
    version=version,
    description='Delta-first synchronization of routing data segments over HTTP. Checksum-addressed binary deltas, full-download fallback, integrity-gated atomic replacement, throttling and cooperative cancellation.',
    long_description=long_description,
    long_description_content_type='text/markdown',
    author='Alejandro Sanchez',
    author_email='alesangreat@gmail.com',
    py_modules=['segment_sync', 'segment_delta', 'segment_base'],
    python_requires='>=3.8',
    install_requires=[
        'requests>=2.28.0',
        'xxhash>=3.0.0',
        'lz4>=4.0.0',
        'zstandard>=0.20.0',
    ],
    extras_require={
        'dev': [
            'pytest>=7.0.0',
            'pytest-cov>=4.0.0',
            'mypy>=1.0.0',
            'black>=23.0.0',
            'flake8>=6.0.0',
            'isort>=5.12.0',
        ],
    },
    entry_points={
        'console_scripts': [
            'segment-sync=segment_sync:main',
        ],
    },
    classifiers=[
        'Development Status :: 4 - Beta',
        'Intended Audience :: Developers',
        'Intended Audience :: System Administrators',
        'License :: OSI Approved :: GNU General Public License v3 or later (GPLv3+)',
        'Operating System :: OS Independent',
        'Programming Language :: Python :: 3',
        'Programming Language :: Python :: 3.8',
        'Programming Language :: Python :: 3.9',
        'Programming Language :: Python :: 3.10',
        'Programming Language :: Python :: 3.11',
        'Programming Language :: Python :: 3.12',
        'Topic :: Internet :: WWW/HTTP',
        'Topic :: Scientific/Engineering :: GIS',
        'Topic :: System :: Archiving :: Mirroring',
        'Topic :: Utilities',
    ],
    keywords='sync delta download segments routing brouter throttling',
    license='GPL-3.0-or-later',
    platforms=['any'],
    zip_safe=False,
)
