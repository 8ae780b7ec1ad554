"""regflow - project-creation request workflow and registry event dispatch."""

__version__ = "1.0.0"
