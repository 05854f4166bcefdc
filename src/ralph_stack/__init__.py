"""ralph-stack: Ralph iteration loop and GitHub merge-stack automation."""

__version__ = "0.3.0"
