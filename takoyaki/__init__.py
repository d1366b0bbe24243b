#
# Copyright 2025 Daniel Balparda (balparda@gmail.com)
# GNU General Public License v3 (http://www.gnu.org/licenses/gpl-3.0.txt)
#
"""Takoyaki: chess game corpus search engine (positions, patterns and TQL queries)."""

__author__ = 'balparda@gmail.com (Daniel Balparda)'
__version__ = (1, 0)
