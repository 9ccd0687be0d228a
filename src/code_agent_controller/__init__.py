"""Code Agent Controller: warm-pooled agent boxes and single-host workspaces."""

__version__ = "0.1.0"
