"""AdaptGraph · Adaptive Ausführung deklarativer Task-Graphen."""

__version__ = "0.1.0"
