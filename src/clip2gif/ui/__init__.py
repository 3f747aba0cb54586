"""
User interface components for clip2gif.

Provides both Rich-based and plain-text progress displays.
"""

from clip2gif.ui.legacy_ui import LegacyProgressUI, fmt_hms, mkbar, shorten
from clip2gif.ui.simple_rich import SimpleRichUI

__all__ = [
    "LegacyProgressUI",
    "SimpleRichUI",
    "fmt_hms",
    "mkbar",
    "shorten",
]
