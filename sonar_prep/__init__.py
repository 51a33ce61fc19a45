"""sonar_prep: begin step for .NET code analysis."""

__all__ = ["__version__"]

__version__ = "0.1.0"
