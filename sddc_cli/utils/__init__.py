"""Utility modules for the SDDC lifecycle CLI."""

from sddc_cli.utils.logging import bind_run_context, configure_logging

__all__ = ["bind_run_context", "configure_logging"]
