from .engine import FilterEngine, FilterResult

__all__ = ["FilterEngine", "FilterResult"]
