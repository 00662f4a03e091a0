"""Default settings entry point; production overrides live in ``production``."""

from .base import *  # noqa: F401,F403
