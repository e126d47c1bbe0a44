"""
Unveil: Obstruction-Free Web Page Archiver

A utility for archiving live web pages (HTML snapshot, screenshot, PDF and
metadata) after dismissing the consent dialogs, subscription nags, sticky ad
units and notification prompts that would otherwise pollute the archive.
"""

__version__ = "1.0"
__author__ = "Unveil Project"
__description__ = "Obstruction-Free Web Page Archiver"
