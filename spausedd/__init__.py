"""spausedd: report when the host does not schedule this process on time."""

__version__ = "1.0.0"
