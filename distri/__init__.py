"""Package versions, SquashFS images, repository access and tracing for distri."""

__version__ = "0.1.0"