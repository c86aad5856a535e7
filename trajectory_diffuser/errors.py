"""Exceptions raised by the diffusion core."""


class DiffuserError(Exception):
    """Base class for trajectory_diffuser errors."""


class ConfigError(DiffuserError, ValueError):
    """Invalid construction-time configuration (never retried)."""


class ShapeError(DiffuserError, ValueError):
    """A tensor handed to the core does not match the configured dimensions."""
