"""polymidi package initializer.

The post-processing pipeline lives in ``polymidi.pipeline``; this module
only carries the package version.
"""

__version__ = "1.0.0"
