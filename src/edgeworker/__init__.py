"""Multi-tenant edge worker that routes issue tracker events to coding-agent sessions."""

__version__ = "0.1.0"
