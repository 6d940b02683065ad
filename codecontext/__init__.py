"""codecontext: cross-file code-context index for explaining a line of code."""

__version__ = "1.0.0"
