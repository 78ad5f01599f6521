#!/usr/bin/env python3
"""
Setup script for delta-mirror

Installation:
    pip install .
    pip install -e .[dev]  # Development mode

Distribution:
    python setup.py sdist bdist_wheel
"""

from setuptools import setup
import re

# Read version from delta_mirror.py
with open('delta_mirror.py', 'r', encoding='utf-8') as f:
    content = f.read()
    version_match = re.search(r'^__version__\s*=\s*[\'"]([^\'"]*)[\'"]', content, re.MULTILINE)
    if version_match:
        version = version_match.group(1)
    else:
        raise RuntimeError("Unable to find version string in delta_mirror.py")

# Read long description from README
with open('README.md', 'r', encoding='utf-8') as f:
    long_description = f.read()

setup(
    name='delta-mirror',
    version=version,
    description='Mirror a remote directory over HTTP by transferring only byte-level deltas (rolling checksum, block matching, atomic apply).',
    long_description=long_description,
    long_description_content_type='text/markdown',
    py_modules=['delta_mirror', 'mirror_sync'],
    python_requires='>=3.8',
    install_requires=[
        'xxhash>=3.0.0',
        'requests>=2.25.0',
        'urllib3>=1.26.0',
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
            'delta-mirror=mirror_sync:main',
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
        'Topic :: System :: Archiving :: Mirroring',
        'Topic :: Internet :: WWW/HTTP :: HTTP Servers',
        'Topic :: Utilities',
    ],
    keywords='rsync mirror sync delta rolling-checksum file-transfer',
    license='GPL-3.0-or-later',
    platforms=['any'],
    zip_safe=False,
)
