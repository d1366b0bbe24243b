#!/usr/bin/python3 -O
#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Setup."""

import pathlib

import setuptools


def _ReadRequirements() -> list[str]:
  """Read dependencies from requirements.txt."""
  req_file: pathlib.Path = pathlib.Path(__file__).parent / 'requirements.txt'
  if not req_file.is_file():
    return []
  return [r for r in req_file.read_text().splitlines() if r.strip()]


setuptools.setup(
    name='takoyaki',
    version='1.0.0',
    description='Search engine for chess game corpora: exact, pattern and TQL structural queries',
    author='Daniel Balparda',
    author_email='balparda@gmail.com',
    license='GPL-3.0-or-later',
    packages=setuptools.find_packages(include=['takoyaki', 'takoyaki.*']),
    package_data={'takoyaki': ['test-pgn/*.pgn']},
    include_package_data=True,
    install_requires=_ReadRequirements(),
    extras_require={'test': ['pytest>=7.0']},
    python_requires='>=3.9',
    entry_points={
        'console_scripts': [
            'takoingest=takoyaki.takoingest:Main',
            'takosearch=takoyaki.takosearch:Main',
            'takomaintain=takoyaki.takomaintain:Main',
        ],
    },
    classifiers=[
        'Programming Language :: Python :: 3',
        'License :: OSI Approved :: GNU General Public License v3 (GPLv3)',
        'Operating System :: OS Independent',
    ],
)
