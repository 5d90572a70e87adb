"""Worker/Manager agent orchestration."""

__version__ = "0.3.0"
