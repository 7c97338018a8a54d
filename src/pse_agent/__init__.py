"""PSE build agent: transparent HTTPS interception and CA trust bootstrap for CI jobs."""

__version__ = "0.1.0"
