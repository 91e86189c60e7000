"""Client-side lifecycle engine for SDDC control-plane image operations."""

__version__ = "0.1.0"
