"""Newsletter courier: inbox newsletters to Discord channels."""

__version__ = "0.1.0"
