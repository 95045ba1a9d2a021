"""
Single source of truth for application version.

Update this file to change the version everywhere.
"""

__version__ = "1.0.0"
__version_info__ = tuple(int(x) for x in __version__.split("."))

# For display
VERSION_STRING = f"Print Cloud v{__version__}"
