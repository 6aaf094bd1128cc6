"""Grove — phase-driven dispatch of coding agents against tickets."""

__version__ = "0.1.0"
